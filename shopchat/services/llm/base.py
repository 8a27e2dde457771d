from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for completion providers.

    Implementations raise CompletionError with an ErrorKind for every failure.
    """

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: str,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate a completion with the given candidate model."""

    async def aclose(self) -> None:
        return None
