from shopchat.services.llm.base import LLMProvider, LLMResponse
from shopchat.services.llm.errors import (
    CompletionError,
    DispatchAbortedError,
    DispatchError,
    DispatchExhaustedError,
    ErrorKind,
)
from shopchat.services.llm.openrouter_provider import OpenRouterProvider

__all__ = [
    "CompletionError",
    "DispatchAbortedError",
    "DispatchError",
    "DispatchExhaustedError",
    "ErrorKind",
    "LLMProvider",
    "LLMResponse",
    "OpenRouterProvider",
]
