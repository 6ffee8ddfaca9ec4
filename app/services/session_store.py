from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import ChatMessage, ChatSession
from app.services.conversation_meta import HistoryMessage
from app.services.personalization_service import is_uuid

logger = get_logger("session_store")

RELAY_SENDER_TYPES = ("manager", "human_admin")
SENDER_TYPE_BY_ROLE = {"user": "user", "assistant": "bot"}


@dataclass
class NewMessage:
    session_id: str
    role: str
    content: str
    meta: dict = field(default_factory=dict)


@dataclass
class RelayMessage:
    id: int
    session_id: str
    content: str


class SessionStore:
    """Chat sessions and messages in Postgres. One short DB session per operation."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def ensure_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        values = {"session_id": session_id, "updated_at": datetime.now(timezone.utc)}
        user_id = (user_id or "").strip()
        if user_id:
            if is_uuid(user_id):
                values["auth_user_id"] = user_id.lower()
            else:
                values["user_id"] = user_id
        update = {key: value for key, value in values.items() if key != "session_id"}

        db = self.session_factory()
        try:
            stmt = insert(ChatSession).values(**values)
            stmt = stmt.on_conflict_do_update(index_elements=[ChatSession.session_id], set_=update)
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def is_human_mode(self, session_id: str) -> bool:
        db = self.session_factory()
        try:
            row = db.query(ChatSession.is_human_mode).filter(ChatSession.session_id == session_id).first()
            return bool(row and row[0])
        finally:
            db.close()

    def fetch_history(self, session_id: str, limit: int = 30) -> list[HistoryMessage]:
        """Latest ``limit`` messages in conversation order."""
        db = self.session_factory()
        try:
            rows = (
                db.query(ChatMessage)
                .filter(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                .limit(limit)
                .all()
            )
            return [
                HistoryMessage(
                    id=row.id,
                    role=row.role,
                    content=row.content,
                    meta=row.meta_data or {},
                    created_at=row.created_at,
                    sender_type=row.sender_type,
                )
                for row in reversed(rows)
            ]
        finally:
            db.close()

    def insert_messages(self, messages: list[NewMessage]) -> None:
        if not messages:
            return
        db = self.session_factory()
        try:
            now = datetime.now(timezone.utc)
            for message in messages:
                db.add(
                    ChatMessage(
                        session_id=message.session_id,
                        role=message.role,
                        sender_type=SENDER_TYPE_BY_ROLE.get(message.role),
                        content=message.content,
                        meta_data=message.meta or {},
                        created_at=now,
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def fetch_relay_messages(self, after_id: int = 0, limit: int = 100) -> list[RelayMessage]:
        """Staff-authored messages with id greater than ``after_id``, oldest first."""
        db = self.session_factory()
        try:
            query = db.query(ChatMessage.id, ChatMessage.session_id, ChatMessage.content).filter(
                or_(ChatMessage.sender_type.in_(RELAY_SENDER_TYPES), ChatMessage.role == "manager")
            )
            if after_id > 0:
                query = query.filter(ChatMessage.id > after_id)
            rows = query.order_by(ChatMessage.id.asc()).limit(limit).all()
            return [RelayMessage(id=row[0], session_id=row[1], content=row[2]) for row in rows]
        finally:
            db.close()

    def latest_relay_message_id(self) -> int:
        db = self.session_factory()
        try:
            row = (
                db.query(ChatMessage.id)
                .filter(or_(ChatMessage.sender_type.in_(RELAY_SENDER_TYPES), ChatMessage.role == "manager"))
                .order_by(ChatMessage.id.desc())
                .first()
            )
            return int(row[0]) if row else 0
        finally:
            db.close()
