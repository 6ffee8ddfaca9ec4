from sqlalchemy import BigInteger, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    session_id = Column(Text, ForeignKey("chat_sessions.session_id"), nullable=False)
    role = Column(Text, nullable=False)  # user, assistant, manager
    sender_type = Column(Text)  # user, bot, human_admin, manager
    content = Column(Text, nullable=False)
    meta_data = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
