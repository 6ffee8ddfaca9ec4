"""Typed accessors over the schema-less message metadata.

Conversation state (summary, slots, escalation snapshot, product ids, quote
flags) travels inside ``chat_messages.meta_data``. Values written by older
versions or by other clients may have any shape, so every reader decodes
defensively and falls back to "absent" instead of raising.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.logging_config import get_logger

logger = get_logger("conversation_meta")

POSTGRES_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
)
SHORT_OFFSET_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?[+-]\d{2})$")


@dataclass
class HistoryMessage:
    role: str
    content: str
    meta: dict = field(default_factory=dict)
    created_at: Any = None  # datetime from the store, str from JSON payloads
    sender_type: Optional[str] = None
    id: Optional[int] = None


@dataclass
class EscalationState:
    manager_notified_at: str = ""
    director_notified_at: str = ""
    last_escalation_reason: str = ""
    last_clarify_count: int = 0

    @classmethod
    def from_meta(cls, raw: Any) -> Optional["EscalationState"]:
        if not isinstance(raw, dict):
            return None
        try:
            clarify = int(raw.get("last_clarify_count") or 0)
        except (TypeError, ValueError):
            clarify = 0
        return cls(
            manager_notified_at=_as_str(raw.get("manager_notified_at")),
            director_notified_at=_as_str(raw.get("director_notified_at")),
            last_escalation_reason=_as_str(raw.get("last_escalation_reason")),
            last_clarify_count=clarify,
        )

    def to_meta(self) -> dict:
        data: dict[str, Any] = {}
        if self.manager_notified_at:
            data["manager_notified_at"] = self.manager_notified_at
        if self.director_notified_at:
            data["director_notified_at"] = self.director_notified_at
        if self.last_escalation_reason:
            data["last_escalation_reason"] = self.last_escalation_reason
        if self.last_clarify_count:
            data["last_clarify_count"] = self.last_clarify_count
        return data

    def clear(self) -> None:
        self.manager_notified_at = ""
        self.director_notified_at = ""
        self.last_escalation_reason = ""
        self.last_clarify_count = 0


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def format_timestamp(value: datetime) -> str:
    """Serialize as UTC RFC 3339 with second precision."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse RFC 3339 or Postgres text timestamps.

    Returns None when the value is empty or matches neither format; callers
    treat None as "timestamp absent".
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    text = str(raw).strip()
    if not text:
        return None
    # postgres renders UTC as "+00"
    text = SHORT_OFFSET_RE.sub(r"\1:00", text)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    for fmt in POSTGRES_TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.warning(f"Unparseable timestamp ignored: {text!r}")
    return None


def meta_flag(meta: Optional[dict], key: str) -> bool:
    if not meta:
        return False
    return meta.get(key) is True


def meta_string_list(meta: Optional[dict], key: str) -> list[str]:
    if not meta:
        return []
    raw = meta.get(key)
    if not isinstance(raw, list):
        return []
    out = []
    for item in raw:
        text = _as_str(item)
        if text:
            out.append(text)
    return out


def merge_meta(base: Optional[dict], extra: Optional[dict]) -> dict:
    merged = dict(base or {})
    for key, value in (extra or {}).items():
        merged[key] = value
    return merged


def latest_summary(history: list[HistoryMessage]) -> str:
    for message in reversed(history):
        value = (message.meta or {}).get("summary")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def latest_slots(history: list[HistoryMessage]) -> dict[str, str]:
    for message in reversed(history):
        value = (message.meta or {}).get("slots")
        if isinstance(value, dict) and value:
            return {str(k): _as_str(v) for k, v in value.items()}
    return {}


def merge_slots(current: dict[str, str], extracted: dict[str, str]) -> dict[str, str]:
    """Last write wins per key; blank values never overwrite."""
    merged = dict(current)
    for key, value in extracted.items():
        if value and value.strip():
            merged[key] = value
    return merged


def latest_escalation_state(history: list[HistoryMessage]) -> Optional[EscalationState]:
    for message in reversed(history):
        meta = message.meta or {}
        if "escalation" not in meta:
            continue
        state = EscalationState.from_meta(meta["escalation"])
        if state is not None:
            return state
    return None


def latest_product_ids(history: list[HistoryMessage]) -> list[int]:
    for message in reversed(history):
        raw = (message.meta or {}).get("product_ids")
        if not isinstance(raw, list):
            continue
        ids = []
        for item in raw:
            if isinstance(item, bool):
                continue
            if isinstance(item, (int, float)):
                ids.append(int(item))
            elif isinstance(item, str) and item.strip().isdigit():
                ids.append(int(item.strip()))
        if ids:
            return ids
    return []


def has_quote_offer(history: list[HistoryMessage]) -> bool:
    """Any message in the session carried an accepted-or-not quote offer."""
    return any(meta_flag(message.meta, "kp_offer") for message in history)


def has_recent_quote_offer(history: list[HistoryMessage]) -> bool:
    """The most recent assistant message offered a quote."""
    for message in reversed(history):
        if message.role != "assistant":
            continue
        return meta_flag(message.meta, "kp_offer")
    return False


def should_update_summary(history: list[HistoryMessage], every: int = 6) -> bool:
    if every <= 0:
        every = 6
    last_index = -1
    for index in range(len(history) - 1, -1, -1):
        if "summary" in (history[index].meta or {}):
            last_index = index
            break
    if last_index == -1:
        return len(history) >= every
    return len(history) - 1 - last_index >= every


def last_human_admin_reply(history: list[HistoryMessage]) -> Optional[datetime]:
    for message in reversed(history):
        if (message.sender_type or "").strip().lower() != "human_admin":
            continue
        created = parse_timestamp(message.created_at)
        if created is not None:
            return created
    return None


@dataclass
class ConversationMeta:
    """Decoded view of one message's metadata. Unknown keys are kept in ``extra``."""

    summary: Optional[str] = None
    slots: dict[str, str] = field(default_factory=dict)
    escalation: Optional[EscalationState] = None
    product_ids: list[int] = field(default_factory=list)
    kp_offer: bool = False
    kp_accept: bool = False
    kp_pdf: bool = False
    incoming_quote_pdf: bool = False
    from_db_relay: bool = False
    document_articles: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    KNOWN_KEYS = (
        "summary",
        "slots",
        "escalation",
        "product_ids",
        "kp_offer",
        "kp_accept",
        "kp_pdf",
        "incoming_quote_pdf",
        "from_db_relay",
        "document_articles",
    )

    @classmethod
    def from_meta(cls, raw: Any) -> "ConversationMeta":
        if not isinstance(raw, dict):
            return cls()
        summary = raw.get("summary")
        slots = raw.get("slots")
        return cls(
            summary=summary.strip() if isinstance(summary, str) and summary.strip() else None,
            slots={str(k): _as_str(v) for k, v in slots.items()} if isinstance(slots, dict) else {},
            escalation=EscalationState.from_meta(raw.get("escalation")),
            product_ids=latest_product_ids([HistoryMessage(role="", content="", meta=raw)]),
            kp_offer=meta_flag(raw, "kp_offer"),
            kp_accept=meta_flag(raw, "kp_accept"),
            kp_pdf=meta_flag(raw, "kp_pdf"),
            incoming_quote_pdf=meta_flag(raw, "incoming_quote_pdf"),
            from_db_relay=meta_flag(raw, "from_db_relay"),
            document_articles=meta_string_list(raw, "document_articles"),
            extra={k: v for k, v in raw.items() if k not in cls.KNOWN_KEYS},
        )

    def to_meta(self) -> dict:
        data = dict(self.extra)
        if self.summary:
            data["summary"] = self.summary
        if self.slots:
            data["slots"] = dict(self.slots)
        if self.escalation is not None:
            data["escalation"] = self.escalation.to_meta()
        if self.product_ids:
            data["product_ids"] = list(self.product_ids)
        for key in ("kp_offer", "kp_accept", "kp_pdf", "incoming_quote_pdf", "from_db_relay"):
            if getattr(self, key):
                data[key] = True
        if self.document_articles:
            data["document_articles"] = list(self.document_articles)
        return data
