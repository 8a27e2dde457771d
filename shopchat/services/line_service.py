import base64
import hashlib
import hmac
import time
from typing import Callable, Optional

import httpx

from shopchat.logging_config import get_logger

logger = get_logger("line_service")

MAX_TEXT_CHARS = 5000
# LINE reply tokens are single-use and expire about a minute after the event.
REPLY_TOKEN_TTL_SECONDS = 50.0


def verify_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check X-Line-Signature: base64(HMAC-SHA256(channel_secret, body))."""
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def truncate_text(text: str, limit: int = MAX_TEXT_CHARS) -> str:
    return (text or "")[:limit]


class LineService:
    """Outbound text messages through the LINE Messaging API."""

    BASE_URL = "https://api.line.me/v2/bot/message"

    def __init__(
        self,
        access_token: str,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.access_token = access_token
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._clock = clock
        self._reply_tokens: dict[str, tuple[str, float]] = {}

    def remember_reply_token(self, key: str, reply_token: Optional[str]) -> None:
        if key and reply_token:
            self._reply_tokens[key] = (reply_token, self._clock())

    def _take_reply_token(self, key: str) -> Optional[str]:
        entry = self._reply_tokens.pop(key, None)
        if entry is None:
            return None
        token, received_at = entry
        if self._clock() - received_at > REPLY_TOKEN_TTL_SECONDS:
            return None
        return token

    async def _make_request(self, method: str, payload: dict) -> bool:
        url = f"{self.BASE_URL}/{method}"
        try:
            response = await self._client.post(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.error(f"LINE API error: {e}", extra={"context": {"method": method}})
            return False
        if response.status_code != 200:
            logger.warning(
                f"LINE {method} failed: status={response.status_code}, body={response.text[:200]}",
                extra={"context": {"method": method}},
            )
            return False
        return True

    async def reply(self, reply_token: str, text: str) -> bool:
        return await self._make_request(
            "reply",
            {"replyToken": reply_token, "messages": [{"type": "text", "text": truncate_text(text)}]},
        )

    async def push(self, key: str, text: str) -> bool:
        return await self._make_request(
            "push",
            {"to": key, "messages": [{"type": "text", "text": truncate_text(text)}]},
        )

    async def send_text(self, key: str, text: str) -> bool:
        """Reply with the latest fresh reply token for the key, else push."""
        if not text:
            return False
        reply_token = self._take_reply_token(key)
        if reply_token and await self.reply(reply_token, text):
            return True
        return await self.push(key, text)

    async def aclose(self) -> None:
        await self._client.aclose()
