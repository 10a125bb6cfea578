from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    finish_reason: Optional[str] = None  # stop, length, content_filter

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


class LLMProvider(ABC):
    """Chat-completion backend used for free-form replies.

    Implementations raise ExternalServiceError on transport or HTTP failure;
    callers turn that into a failed Result and fall back to templates.
    """

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 600,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        pass
