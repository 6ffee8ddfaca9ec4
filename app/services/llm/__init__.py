from app.services.llm.base import LLMProvider, LLMResponse
from app.services.llm.openai_provider import OpenAIProvider, strip_code_fences

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider", "strip_code_fences"]
