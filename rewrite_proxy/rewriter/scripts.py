"""
Client-side script templates injected into rewritten content.

These are output artifacts: plain JavaScript text that runs in the browser.
Values are inserted as JSON literals so they are always valid JS strings.
"""

import json
from typing import Optional


def js_literal(value) -> str:
    # "</" would terminate the surrounding <script> element
    return json.dumps(value).replace("</", "<\\/")


def session_constants_script(
    session_id: Optional[str],
    proxy_url: str,
    target_url: Optional[str],
    gateway_path: str,
    ws_path: str,
) -> str:
    return (
        f"window.__PROXY_SESSION__ = {js_literal(session_id or '')};\n"
        f"window.__PROXY_BASE_URL__ = {js_literal(proxy_url)};\n"
        f"window.__PROXY_TARGET_URL__ = {js_literal(target_url or '')};\n"
        f"window.__PROXY_GATEWAY_PATH__ = {js_literal(gateway_path)};\n"
        f"window.__PROXY_WS_PATH__ = {js_literal(ws_path)};\n"
    )


# Reads the constants above; keeps the native prototype so instanceof checks hold
WEBSOCKET_SHIM = """(function () {
  var NativeWebSocket = window.WebSocket;
  if (!NativeWebSocket || NativeWebSocket.__proxied__) { return; }
  var prefix = (window.__PROXY_BASE_URL__ || '') + (window.__PROXY_WS_PATH__ || '/ws') + '?url=';
  function ProxiedWebSocket(url, protocols) {
    var target = String(url);
    if (target.indexOf(prefix) !== 0) {
      try {
        target = new URL(target, window.__PROXY_TARGET_URL__ || window.location.href).href;
      } catch (e) {}
      target = prefix + encodeURIComponent(target);
    }
    return protocols === undefined
      ? new NativeWebSocket(target)
      : new NativeWebSocket(target, protocols);
  }
  ProxiedWebSocket.prototype = NativeWebSocket.prototype;
  ProxiedWebSocket.CONNECTING = NativeWebSocket.CONNECTING;
  ProxiedWebSocket.OPEN = NativeWebSocket.OPEN;
  ProxiedWebSocket.CLOSING = NativeWebSocket.CLOSING;
  ProxiedWebSocket.CLOSED = NativeWebSocket.CLOSED;
  ProxiedWebSocket.__proxied__ = true;
  window.WebSocket = ProxiedWebSocket;
})();
"""


_STORAGE_SHIM_TEMPLATE = """(function () {
  if (typeof window === 'undefined' || !window.localStorage) { return; }
  var nativeStorage = window.localStorage;
  if (nativeStorage.__proxied__) { return; }
  var prefix = __PREFIX__;
  function ownKeys() {
    var keys = [];
    for (var i = 0; i < nativeStorage.length; i++) {
      var key = nativeStorage.key(i);
      if (key !== null && key.indexOf(prefix) === 0) { keys.push(key.slice(prefix.length)); }
    }
    return keys;
  }
  var isolated = {
    __proxied__: true,
    getItem: function (key) { return nativeStorage.getItem(prefix + key); },
    setItem: function (key, value) { nativeStorage.setItem(prefix + key, String(value)); },
    removeItem: function (key) { nativeStorage.removeItem(prefix + key); },
    clear: function () {
      ownKeys().forEach(function (key) { nativeStorage.removeItem(prefix + key); });
    },
    key: function (index) {
      var keys = ownKeys();
      return index < keys.length ? keys[index] : null;
    },
    get length() { return ownKeys().length; }
  };
  try {
    Object.defineProperty(window, 'localStorage', {
      configurable: true,
      get: function () { return isolated; }
    });
  } catch (e) {}
})();
"""


def storage_isolation_script(session_id: str) -> str:
    prefix = f"__proxy_{session_id}_"
    return (
        f"window.__PROXY_SESSION__ = {js_literal(session_id)};\n"
        + _STORAGE_SHIM_TEMPLATE.replace("__PREFIX__", js_literal(prefix))
    )
