"""Unit tests for the generation and payment gateway HTTP adapters."""
import hashlib
import json

import httpx
import pytest

from creditflow.adapters.generator import OpenAICompatibleGenerator
from creditflow.adapters.payment_gateway import HttpPaymentGateway, is_trade_success, sign_params, verify_signature
from creditflow.errors import GenerationRejectedError, TransportError


def _generator(handler) -> OpenAICompatibleGenerator:
    return OpenAICompatibleGenerator(
        base_url="https://llm.test/v1/",
        api_key="sk-test",
        model="gpt-4o-all",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.mark.asyncio
async def test_generate_posts_multimodal_prompt() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_completion("![img](https://cdn.test/a.png)"))

    text = await _generator(handler).generate("make it ghibli", image="aGVsbG8=")

    assert text == "![img](https://cdn.test/a.png)"
    request = seen[0]
    assert request.url == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-all"
    content = body["messages"][0]["content"]
    assert content[0] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,aGVsbG8="}}
    assert content[1] == {"type": "text", "text": "make it ghibli"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [408, 429, 500, 503])
async def test_retryable_statuses_are_transport_errors(status_code: int) -> None:
    generator = _generator(lambda request: httpx.Response(status_code, text="busy"))

    with pytest.raises(TransportError):
        await generator.generate("a cat")


@pytest.mark.asyncio
async def test_timeouts_are_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportError, match="timed out"):
        await _generator(handler).generate("a cat")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(400, text="bad image"), httpx.Response(200, json={"choices": []}), httpx.Response(200, text="<html>")],
    ids=["client-error", "no-choices", "not-json"],
)
async def test_rejections(response: httpx.Response) -> None:
    with pytest.raises(GenerationRejectedError):
        await _generator(lambda request: response).generate("a cat")


@pytest.mark.asyncio
async def test_download_returns_bytes_and_content_type() -> None:
    generator = _generator(lambda request: httpx.Response(200, content=b"PNG", headers={"content-type": "image/png"}))

    assert await generator.download("https://cdn.test/a.png") == (b"PNG", "image/png")


def test_sign_params_matches_gateway_scheme() -> None:
    params = {"pid": "1001", "out_trade_no": "ORD1", "money": "9.90", "sign": "x", "sign_type": "MD5", "param": ""}

    expected = hashlib.md5("money=9.90&out_trade_no=ORD1&pid=1001KEY".encode()).hexdigest()
    assert sign_params(params, "KEY") == expected


def test_verify_signature() -> None:
    params = {"pid": "1001", "out_trade_no": "ORD1", "money": "9.90"}
    params["sign"] = sign_params(params, "KEY")

    assert verify_signature(params, "KEY")
    assert verify_signature({**params, "sign": params["sign"].upper()}, "KEY")
    assert not verify_signature({**params, "money": "0.01"}, "KEY")
    assert not verify_signature(params, "")
    assert not verify_signature({"pid": "1001"}, "KEY")


def test_is_trade_success() -> None:
    assert is_trade_success({"trade_status": "TRADE_SUCCESS"})
    assert is_trade_success({"status": 1})
    assert not is_trade_success({"trade_status": "WAIT_BUYER_PAY", "status": "0"})


def _gateway(handler) -> HttpPaymentGateway:
    return HttpPaymentGateway(
        base_url="https://pay.test",
        merchant_id="1001",
        merchant_key="KEY",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_gateway_query_is_signed_and_confirms_paid_orders() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"code": 1, "status": 1, "trade_no": "T1", "out_trade_no": "ORD1"})

    verification = await _gateway(handler).verify_payment("ORD1")

    assert verification.confirmed is True
    assert verification.trade_no == "T1"
    query = dict(seen[0].url.params)
    assert seen[0].url.path == "/api.php"
    assert query["act"] == "order"
    assert query["sign"] == sign_params({"act": "order", "pid": "1001", "out_trade_no": "ORD1"}, "KEY")


@pytest.mark.asyncio
async def test_gateway_reports_unpaid_orders() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"code": 1, "status": 0}))

    assert (await gateway.verify_payment("ORD1")).confirmed is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(502, text="bad gateway"),
        lambda request: httpx.Response(200, text="not json"),
    ],
    ids=["5xx", "bad-body"],
)
async def test_gateway_failures_are_transport_errors(handler) -> None:
    with pytest.raises(TransportError):
        await _gateway(handler).verify_payment("ORD1")
