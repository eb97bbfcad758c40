import httpx
import pytest

from qr2buy.verify_client import verify_with_backoff

pytestmark = pytest.mark.anyio


def _client(responses):
    calls = []

    def handler(request):
        calls.append(request)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


async def _no_sleep(delays, d):
    delays.append(d)


async def test_retries_409_until_confirmed():
    delays = []
    client, calls = _client([
        (409, {"ok": False, "error": "payment not completed"}),
        (409, {"ok": False, "error": "payment not completed"}),
        (200, {"ok": True, "order": {"id": "o1"}}),
    ])
    async with client:
        res = await verify_with_backoff(
            client, "http://app", "cs_1",
            sleep=lambda d: _no_sleep(delays, d),
        )
    assert res.ok is True
    assert res.outcome == "CONFIRMED"
    assert res.attempts == 3
    assert delays == [1.0, 2.0]
    assert calls[0].url.params["session_id"] == "cs_1"


async def test_other_4xx_is_fatal():
    delays = []
    client, _ = _client([(400, {"ok": False, "error": "missing productId"})])
    async with client:
        res = await verify_with_backoff(
            client, "http://app", "cs_1",
            sleep=lambda d: _no_sleep(delays, d),
        )
    assert res.outcome == "FATAL"
    assert res.attempts == 1
    assert res.err == "missing productId"
    assert delays == []


async def test_gives_up_after_schedule():
    delays = []
    client, _ = _client([
        httpx.ConnectError("refused"),
        (503, {"ok": False, "error": "payment provider not configured"}),
        (409, {"ok": False, "error": "payment not completed"}),
    ])
    async with client:
        res = await verify_with_backoff(
            client, "http://app", "cs_1",
            sleep=lambda d: _no_sleep(delays, d),
        )
    assert res.ok is False
    assert res.outcome == "PENDING"
    assert res.attempts == 6
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert res.history[:2] == ["transport-error", "503"]
