from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from app.database import Base


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    session_id = Column(Text, primary_key=True)  # tg:<chat_id>, wa:<phone>, or site session id
    user_id = Column(Text)
    auth_user_id = Column(UUID(as_uuid=False))
    is_human_mode = Column(Boolean, nullable=False, default=False)
    updated_at = Column(TIMESTAMP(timezone=True))
