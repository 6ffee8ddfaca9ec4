from typing import Any, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    message: str = ""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_meta: dict[str, Any] = Field(default_factory=dict)
    match_count: Optional[int] = None
    topic_filter: Optional[str] = None


class MatchOut(BaseModel):
    id: Any
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float = 0.0


class ChatResponse(BaseModel):
    answer: str
    products: list[MatchOut] = Field(default_factory=list)
    knowledge: list[MatchOut] = Field(default_factory=list)
