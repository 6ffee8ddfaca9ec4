from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        max_tokens: int = 1000,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate response from LLM."""
        pass

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        """Single system+user exchange, returns stripped text."""
        response = self.generate(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        return (response.content or "").strip()
