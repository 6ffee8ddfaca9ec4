from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession

__all__ = [
    "ChatSession",
    "ChatMessage",
]
