from app.schemas.chat import ChatRequest, ChatResponse
from app.schemas.quote import QuoteCreateRequest

__all__ = ["ChatRequest", "ChatResponse", "QuoteCreateRequest"]
