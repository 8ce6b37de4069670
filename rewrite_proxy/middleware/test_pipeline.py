import pytest

from rewrite_proxy.errors import InvalidMiddlewarePhase
from rewrite_proxy.middleware import (
    ExchangeRequest,
    ExchangeResponse,
    MiddlewareContext,
    MiddlewarePipeline,
)


@pytest.fixture
def pipeline():
    return MiddlewarePipeline()


@pytest.fixture
def context():
    return MiddlewareContext(
        request=ExchangeRequest(headers={"host": "proxy.local"}),
        response=ExchangeResponse(),
    )


def test_unknown_phase_fails_at_registration(pipeline):
    with pytest.raises(InvalidMiddlewarePhase):
        pipeline.use("before", lambda ctx: None)


@pytest.mark.asyncio
async def test_unknown_phase_fails_at_execution(pipeline, context):
    with pytest.raises(InvalidMiddlewarePhase):
        await pipeline.execute("after", context)


@pytest.mark.asyncio
async def test_handlers_run_in_order_and_see_mutations(pipeline, context):
    async def h1(ctx):
        ctx.extras["seen"] = ["h1"]

    async def h2(ctx):
        ctx.extras["seen"].append("h2")

    pipeline.use("request", h1)
    pipeline.use("request", h2)
    result = await pipeline.execute("request", context)
    assert result is context
    assert context.extras["seen"] == ["h1", "h2"]


@pytest.mark.asyncio
async def test_sync_handlers_are_supported(pipeline, context):
    def stamp(ctx):
        ctx.response.headers["x-sync"] = "1"

    pipeline.use("response", stamp)
    await pipeline.execute("response", context)
    assert context.response.headers["x-sync"] == "1"


@pytest.mark.asyncio
async def test_empty_phase_is_noop(pipeline, context):
    await pipeline.execute("response", context)
    assert context.error is None


@pytest.mark.asyncio
async def test_failure_escalates_to_error_phase_then_reraises(pipeline, context):
    calls = []
    failure = RuntimeError("upstream exploded")

    async def failing(ctx):
        calls.append("failing")
        raise failure

    async def never_runs(ctx):
        calls.append("never")

    async def on_error(ctx):
        calls.append(("error", ctx.error))

    pipeline.use("request", failing)
    pipeline.use("request", never_runs)
    pipeline.use("error", on_error)

    with pytest.raises(RuntimeError) as exc_info:
        await pipeline.execute("request", context)

    assert exc_info.value is failure
    assert calls == ["failing", ("error", failure)]
    assert context.error is failure


@pytest.mark.asyncio
async def test_failure_in_error_phase_does_not_recurse(pipeline, context):
    calls = []

    async def broken_error_handler(ctx):
        calls.append("error")
        raise ValueError("renderer broke")

    pipeline.use("error", broken_error_handler)
    with pytest.raises(ValueError):
        await pipeline.execute("error", context)
    assert calls == ["error"]


@pytest.mark.asyncio
async def test_original_failure_wins_over_error_phase_failure(pipeline, context):
    async def failing(ctx):
        raise KeyError("original")

    async def broken_error_handler(ctx):
        raise ValueError("renderer broke")

    pipeline.use("response", failing)
    pipeline.use("error", broken_error_handler)
    with pytest.raises(KeyError):
        await pipeline.execute("response", context)


def test_request_headers_accept_pairs_and_are_case_insensitive():
    request = ExchangeRequest(headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
    assert request.headers.getlist("set-cookie") == ["a=1", "b=2"]
    assert ExchangeRequest(headers={"Host": "x"}).headers["host"] == "x"
