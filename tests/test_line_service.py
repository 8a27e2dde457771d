import asyncio
import base64
import hashlib
import hmac
import json

import httpx

from shopchat.services.line_service import MAX_TEXT_CHARS, LineService, truncate_text, verify_signature


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def sign(secret, body):
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


class TestVerifySignature:
    def test_valid(self):
        body = b'{"events":[]}'
        assert verify_signature("secret", body, sign("secret", body)) is True

    def test_invalid(self):
        body = b'{"events":[]}'
        assert verify_signature("secret", body, sign("other", body)) is False

    def test_missing_secret_or_signature(self):
        assert verify_signature("", b"{}", "abc") is False
        assert verify_signature("secret", b"{}", None) is False


def test_truncate_text():
    assert len(truncate_text("ก" * (MAX_TEXT_CHARS + 10))) == MAX_TEXT_CHARS
    assert truncate_text(None) == ""


def make_service(statuses, clock=None):
    requests = []
    codes = list(statuses)

    def handler(request):
        requests.append((request.url.path, json.loads(request.content)))
        return httpx.Response(codes.pop(0) if codes else 200, json={})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = LineService("token", client=client, clock=clock or FakeClock())
    return service, requests


class TestSendText:
    def test_uses_fresh_reply_token(self):
        service, requests = make_service([200])
        service.remember_reply_token("U1", "rt-1")

        assert asyncio.run(service.send_text("U1", "สวัสดีค่ะ")) is True

        path, payload = requests[0]
        assert path.endswith("/reply")
        assert payload == {"replyToken": "rt-1", "messages": [{"type": "text", "text": "สวัสดีค่ะ"}]}

    def test_reply_token_used_once(self):
        service, requests = make_service([200, 200])
        service.remember_reply_token("U1", "rt-1")

        asyncio.run(service.send_text("U1", "one"))
        asyncio.run(service.send_text("U1", "two"))

        assert [path.rsplit("/", 1)[-1] for path, _ in requests] == ["reply", "push"]

    def test_stale_reply_token_pushes(self):
        clock = FakeClock()
        service, requests = make_service([200], clock=clock)
        service.remember_reply_token("U1", "rt-1")
        clock.now += 51

        asyncio.run(service.send_text("U1", "hello"))

        path, payload = requests[0]
        assert path.endswith("/push")
        assert payload["to"] == "U1"

    def test_failed_reply_falls_back_to_push(self):
        service, requests = make_service([400, 200])
        service.remember_reply_token("U1", "rt-1")

        assert asyncio.run(service.send_text("U1", "hello")) is True
        assert [path.rsplit("/", 1)[-1] for path, _ in requests] == ["reply", "push"]

    def test_push_failure_reported(self):
        service, _ = make_service([500])
        assert asyncio.run(service.send_text("U1", "hello")) is False

    def test_empty_text_not_sent(self):
        service, requests = make_service([])
        assert asyncio.run(service.send_text("U1", "")) is False
        assert requests == []

    def test_long_text_truncated(self):
        service, requests = make_service([200])
        asyncio.run(service.push("U1", "x" * (MAX_TEXT_CHARS + 1)))
        assert len(requests[0][1]["messages"][0]["text"]) == MAX_TEXT_CHARS
