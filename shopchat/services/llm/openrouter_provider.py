from typing import List, Optional

import httpx

from shopchat.logging_config import get_logger
from shopchat.services.llm.base import LLMProvider, LLMResponse
from shopchat.services.llm.errors import CompletionError, ErrorKind

logger = get_logger("llm.openrouter")

FATAL_STATUSES = {400, 401, 402, 403, 422}
TIMEOUT_STATUSES = {408, 504}


def classify_status(status_code: int) -> ErrorKind:
    """Map a non-200 HTTP status to the dispatch error taxonomy."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in TIMEOUT_STATUSES:
        return ErrorKind.TIMEOUT
    if status_code in FATAL_STATUSES:
        return ErrorKind.FATAL
    return ErrorKind.NETWORK


def extract_content(data: object) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if content is None:
        content = choice.get("text")
    return content.strip() if isinstance(content, str) else ""


class OpenRouterProvider(LLMProvider):
    """OpenRouter chat-completions provider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1/chat/completions",
        referer: str = "https://github.com/prestige959-tech/my-shop-prices",
        title: str = "my-shop-prices line-bot",
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.referer = referer
        self.title = title
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def generate(
        self,
        messages: List[dict],
        model: str,
        temperature: float = 0.7,
    ) -> LLMResponse:
        payload = {"model": model, "temperature": temperature, "messages": messages}
        logger.debug(f"OpenRouter request: model={model}, messages_count={len(messages)}")

        try:
            response = await self._client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "HTTP-Referer": self.referer,
                    "X-Title": self.title,
                },
                json=payload,
            )
        except httpx.TimeoutException as exc:
            raise CompletionError(ErrorKind.TIMEOUT, f"OpenRouter timeout: {exc}", candidate=model) from exc
        except httpx.TransportError as exc:
            raise CompletionError(ErrorKind.NETWORK, f"OpenRouter transport error: {exc}", candidate=model) from exc

        logger.debug(f"OpenRouter response status: {response.status_code}")

        if response.status_code != 200:
            kind = classify_status(response.status_code)
            raise CompletionError(
                kind,
                f"OpenRouter {response.status_code}: {response.text[:200]}",
                candidate=model,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError(ErrorKind.MALFORMED, "OpenRouter returned invalid JSON", candidate=model) from exc

        content = extract_content(data)
        if not content:
            raise CompletionError(ErrorKind.MALFORMED, "No content from OpenRouter", candidate=model)

        return LLMResponse(content=content, model=data.get("model", model), usage=data.get("usage"))

    async def aclose(self) -> None:
        await self._client.aclose()
