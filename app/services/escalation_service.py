"""Stalled-dialogue escalation: manager first, director after a timeout.

State lives in the latest assistant message metadata (see conversation_meta),
so every decision is derived from history read at decision time:

    IDLE --(clarify streak or negative keyword)--> MANAGER_NOTIFIED
    MANAGER_NOTIFIED --(timeout, no human reply)--> DIRECTOR_NOTIFIED
    any --(human_admin reply after manager notification)--> IDLE

State only advances after the notification was delivered.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from app.logging_config import get_logger
from app.services.catalog_service import KnowledgeMatch
from app.services.conversation_meta import (
    EscalationState,
    HistoryMessage,
    format_timestamp,
    last_human_admin_reply,
    latest_escalation_state,
    parse_timestamp,
)
from app.services.intent_service import is_clarifying_question
from app.services.telegram_service import TelegramService, parse_chat_id

logger = get_logger("escalation_service")

ESCALATION_RULE_TYPE = "escalation_rule"
STATE_RELOAD_LIMIT = 50
SESSION_LOCK_STRIPES = 64
SENT_RECORD_TTL = timedelta(hours=24)
DEFAULT_TEMPLATE = "Нужен менеджер для чата {session_id}. Последний запрос: {last_user_message}"


class EscalationLevel(str, Enum):
    IDLE = "idle"
    MANAGER_NOTIFIED = "manager_notified"
    DIRECTOR_NOTIFIED = "director_notified"


class TriggerReason(str, Enum):
    CLARIFY_COUNT = "clarify_count"
    NEGATIVE_KEYWORD = "negative_keyword"


@dataclass
class EscalationTrigger:
    max_consecutive_clarify_questions: int = 0
    negative_keywords: list[str] = field(default_factory=list)


@dataclass
class EscalationRule:
    trigger: EscalationTrigger
    manager_template: str = ""
    director_timeout_minutes: int = 0
    director_template: str = ""

    @classmethod
    def from_content(cls, raw: str) -> Optional["EscalationRule"]:
        """Parse the JSON body of an escalation_rule knowledge snippet."""
        raw = (raw or "").strip()
        if "{" not in raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict) or str(data.get("type") or "").strip() != ESCALATION_RULE_TYPE:
            return None

        manager = data.get("manager") if isinstance(data.get("manager"), dict) else {}
        director = data.get("director") if isinstance(data.get("director"), dict) else {}
        trigger = manager.get("trigger") if isinstance(manager.get("trigger"), dict) else {}
        keywords = trigger.get("negative_keywords") if isinstance(trigger.get("negative_keywords"), list) else []
        try:
            max_clarify = int(trigger.get("max_consecutive_clarify_questions") or 0)
            timeout = int(director.get("timeout_minutes") or 0)
        except (TypeError, ValueError):
            return None

        return cls(
            trigger=EscalationTrigger(
                max_consecutive_clarify_questions=max_clarify,
                negative_keywords=[str(k) for k in keywords],
            ),
            manager_template=str(manager.get("message_template") or ""),
            director_timeout_minutes=timeout,
            director_template=str(director.get("message_template") or ""),
        )

    @classmethod
    def from_matches(cls, matches: list[KnowledgeMatch]) -> Optional["EscalationRule"]:
        if not matches:
            return None
        return cls.from_content(matches[0].content)


def level_of(state: Optional[EscalationState]) -> EscalationLevel:
    if state is None or not state.manager_notified_at:
        return EscalationLevel.IDLE
    if state.director_notified_at:
        return EscalationLevel.DIRECTOR_NOTIFIED
    return EscalationLevel.MANAGER_NOTIFIED


def count_consecutive_clarify(history: list[HistoryMessage], current_answer: str) -> int:
    """Current answer plus the unbroken run of clarifying assistant replies before it."""
    if not is_clarifying_question(current_answer):
        return 0
    count = 1
    for message in reversed(history):
        if message.role != "assistant":
            continue
        if not is_clarifying_question(message.content):
            break
        count += 1
    return count


def should_trigger_manager(
    user_message: str, clarify_count: int, trigger: EscalationTrigger
) -> Optional[TriggerReason]:
    limit = trigger.max_consecutive_clarify_questions
    if limit > 0 and clarify_count >= limit:
        return TriggerReason.CLARIFY_COUNT
    text = (user_message or "").lower()
    for keyword in trigger.negative_keywords:
        keyword = keyword.strip().lower()
        if keyword and keyword in text:
            return TriggerReason.NEGATIVE_KEYWORD
    return None


def render_template(template: str, session_id: str, last_user_message: str, timeout_minutes: int) -> str:
    if not template:
        template = DEFAULT_TEMPLATE
    return (
        template.replace("{session_id}", session_id)
        .replace("{last_user_message}", last_user_message)
        .replace("{timeout}", str(timeout_minutes))
    )


class DirectorScheduler:
    """Per-session cancellable timers for the delayed director check.

    Scheduling replaces the session's previous timer. A timer that was
    replaced or cancelled never runs its callback.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._closed = False

    def schedule(self, session_id: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        timer = threading.Timer(max(delay_seconds, 0.0), self._fire, args=(session_id, callback))
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            previous = self._timers.pop(session_id, None)
            self._timers[session_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        logger.info(f"Director check scheduled: session_id={session_id} delay={delay_seconds:.0f}s")

    def cancel(self, session_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()
            logger.info(f"Director check cancelled: session_id={session_id}")

    def is_pending(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._timers

    def close(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, session_id: str, callback: Callable[[], None]) -> None:
        current = threading.current_thread()
        with self._lock:
            if self._timers.get(session_id) is not current:
                return
            del self._timers[session_id]
        try:
            callback()
        except Exception as e:
            logger.error(f"Director check failed: session_id={session_id} error={e}", exc_info=True)


@dataclass
class SentNotification:
    """A delivered notification the session store may not reflect yet."""

    manager_notified_at: str
    reason: str = ""
    director_notified_at: str = ""


class EscalationService:
    def __init__(
        self,
        telegram: TelegramService,
        manager_chat_id: Optional[str],
        director_chat_id: Optional[str],
        history_loader: Callable[[str, int], list[HistoryMessage]],
        scheduler: Optional[DirectorScheduler] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.telegram = telegram
        self.manager_chat_id = parse_chat_id(manager_chat_id)
        self.director_chat_id = parse_chat_id(director_chat_id)
        self.history_loader = history_loader
        self.scheduler = scheduler or DirectorScheduler()
        self.now = now
        self._lock = threading.Lock()
        # check, send and record run under the session's stripe
        self._session_locks = [threading.Lock() for _ in range(SESSION_LOCK_STRIPES)]
        self._sent: dict[str, SentNotification] = {}

    def _session_lock(self, session_id: str) -> threading.Lock:
        return self._session_locks[hash(session_id) % len(self._session_locks)]

    def _send(self, chat_id: int, text: str) -> bool:
        if not text.strip():
            return False
        result = self.telegram.send_message(chat_id, text)
        if not result.get("ok"):
            logger.warning(f"Escalation send failed: chat_id={chat_id} result={result}")
            return False
        return True

    def _reload_history(self, session_id: str, fallback: list[HistoryMessage]) -> list[HistoryMessage]:
        try:
            fresh = self.history_loader(session_id, STATE_RELOAD_LIMIT)
        except Exception as e:
            logger.warning(f"Escalation state reload failed, using turn history: session_id={session_id} error={e}")
            return fallback
        return fresh or fallback

    def evaluate(
        self,
        session_id: str,
        user_message: str,
        answer: str,
        history: list[HistoryMessage],
        rule: Optional[EscalationRule],
    ) -> Optional[EscalationState]:
        """Advance the session's escalation state for this turn; returns the snapshot to persist.

        The state is re-read from the store right before deciding, and
        notifications already delivered by overlapping turns or the director
        timer are applied on top of it, so each transition fires once.
        """
        if rule is None:
            return None
        if self.manager_chat_id is None:
            logger.warning("Escalation skipped: MANAGER_CHAT_ID missing")
            return None

        with self._session_lock(session_id):
            fresh = self._reload_history(session_id, history)
            state = latest_escalation_state(fresh) or EscalationState()
            self._apply_sent(session_id, state)

            last_reply = last_human_admin_reply(fresh)
            manager_at = parse_timestamp(state.manager_notified_at)
            if manager_at is not None and last_reply is not None and last_reply > manager_at:
                logger.info(f"Escalation reset by human reply: session_id={session_id}")
                state.clear()
                self.scheduler.cancel(session_id)
                with self._lock:
                    self._sent.pop(session_id, None)
                manager_at = None

            clarify_count = count_consecutive_clarify(history, answer)
            state.last_clarify_count = clarify_count

            reason = should_trigger_manager(user_message, clarify_count, rule.trigger)
            if reason is not None and level_of(state) == EscalationLevel.IDLE:
                text = render_template(rule.manager_template, session_id, user_message, rule.director_timeout_minutes)
                if self._send(self.manager_chat_id, text):
                    state.manager_notified_at = format_timestamp(self.now())
                    state.last_escalation_reason = reason.value
                    manager_at = parse_timestamp(state.manager_notified_at)
                    self._remember(session_id, SentNotification(state.manager_notified_at, reason.value))
                    logger.info(
                        "Manager notified",
                        extra={"context": {"session_id": session_id, "reason": reason.value}},
                    )
                    self._schedule_director(session_id, user_message, state.manager_notified_at, rule)

            if self._director_due(state, manager_at, last_reply, rule):
                text = render_template(rule.director_template, session_id, user_message, rule.director_timeout_minutes)
                if self._send(self.director_chat_id, text):
                    state.director_notified_at = format_timestamp(self.now())
                    self._remember(
                        session_id,
                        SentNotification(
                            state.manager_notified_at, state.last_escalation_reason, state.director_notified_at
                        ),
                    )
                    self.scheduler.cancel(session_id)
                    logger.info("Director notified", extra={"context": {"session_id": session_id}})

            return state

    def _director_due(
        self,
        state: EscalationState,
        manager_at: Optional[datetime],
        last_reply: Optional[datetime],
        rule: EscalationRule,
    ) -> bool:
        if level_of(state) != EscalationLevel.MANAGER_NOTIFIED:
            return False
        if rule.director_timeout_minutes <= 0 or self.director_chat_id is None:
            return False
        if manager_at is None:
            return False
        if self.now() - manager_at < timedelta(minutes=rule.director_timeout_minutes):
            return False
        return last_reply is None or last_reply < manager_at

    def _schedule_director(self, session_id: str, user_message: str, manager_notified_at: str, rule: EscalationRule):
        if rule.director_timeout_minutes <= 0 or self.director_chat_id is None:
            return
        manager_at = parse_timestamp(manager_notified_at)
        if manager_at is None:
            return
        due = manager_at + timedelta(minutes=rule.director_timeout_minutes)
        delay = (due - self.now()).total_seconds()
        self.scheduler.schedule(
            session_id,
            delay,
            lambda: self.check_director(session_id, user_message, manager_notified_at, rule),
        )

    def check_director(self, session_id: str, last_user_message: str, manager_notified_at: str, rule: EscalationRule):
        """Deferred director check; re-validates against freshly read history."""
        manager_at = parse_timestamp(manager_notified_at)
        if manager_at is None or self.director_chat_id is None:
            return
        with self._session_lock(session_id):
            try:
                history = self.history_loader(session_id, STATE_RELOAD_LIMIT)
            except Exception as e:
                logger.error(f"Director check history load failed: session_id={session_id} error={e}")
                return

            last_reply = last_human_admin_reply(history)
            if last_reply is not None and last_reply > manager_at:
                logger.info(f"Director check skipped, human replied: session_id={session_id}")
                with self._lock:
                    self._sent.pop(session_id, None)
                return

            state = latest_escalation_state(history) or EscalationState()
            self._apply_sent(session_id, state)
            if parse_timestamp(state.manager_notified_at) != manager_at:
                logger.info(f"Director check skipped, escalation state changed: session_id={session_id}")
                return
            director_at = parse_timestamp(state.director_notified_at)
            if director_at is not None and director_at >= manager_at:
                return

            text = render_template(rule.director_template, session_id, last_user_message, rule.director_timeout_minutes)
            if self._send(self.director_chat_id, text):
                self._remember(
                    session_id,
                    SentNotification(manager_notified_at, state.last_escalation_reason, format_timestamp(self.now())),
                )
                logger.info("Director notified by timer", extra={"context": {"session_id": session_id}})

    def _remember(self, session_id: str, sent: SentNotification) -> None:
        with self._lock:
            self._sent[session_id] = sent
            self._prune_locked()

    def _prune_locked(self) -> None:
        cutoff = self.now() - SENT_RECORD_TTL
        for session_id, sent in list(self._sent.items()):
            sent_at = parse_timestamp(sent.manager_notified_at)
            if sent_at is None or sent_at < cutoff:
                del self._sent[session_id]

    def _apply_sent(self, session_id: str, state: EscalationState) -> None:
        """Overlay delivered notifications the stored state does not show yet."""
        with self._lock:
            sent = self._sent.get(session_id)
            if sent is None:
                return
            if state.manager_notified_at and state.manager_notified_at != sent.manager_notified_at:
                stored_at = parse_timestamp(state.manager_notified_at)
                sent_at = parse_timestamp(sent.manager_notified_at)
                if stored_at is None or sent_at is None or stored_at > sent_at:
                    del self._sent[session_id]
                    return
            elif state.manager_notified_at and (state.director_notified_at or not sent.director_notified_at):
                # store caught up
                del self._sent[session_id]
                return
        state.manager_notified_at = sent.manager_notified_at
        if sent.reason:
            state.last_escalation_reason = sent.reason
        if sent.director_notified_at and not state.director_notified_at:
            state.director_notified_at = sent.director_notified_at

    def pending_notifications(self) -> int:
        with self._lock:
            return len(self._sent)

    def close(self) -> None:
        self.scheduler.close()
