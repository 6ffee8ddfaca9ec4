"""Coalesces bursts of inbound messages into one logical turn per session.

A session's buffer is flushed when it has been idle for ``idle_seconds`` or
when it is older than ``max_wait_seconds`` at the time of a new message. A
flush detaches the buffer under the registry lock and calls ``on_flush``
outside of it, exactly once per buffer.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from app.logging_config import get_logger

logger = get_logger("debounce_service")


@dataclass
class PendingMedia:
    kind: str  # voice, photo, document
    data: bytes
    filename: str = ""
    mime_type: str = ""
    caption: str = ""


@dataclass
class PendingTurn:
    session_id: str
    user_id: str
    texts: list[str] = field(default_factory=list)
    media: Optional[PendingMedia] = None

    @property
    def text(self) -> str:
        return "\n".join(self.texts)


@dataclass
class PendingBuffer:
    session_id: str
    user_id: str
    started_at: float
    texts: list[str] = field(default_factory=list)
    media: Optional[PendingMedia] = None
    timer: Optional[threading.Timer] = None
    on_flush: Optional[Callable[[PendingTurn], None]] = None

    def detach(self) -> PendingTurn:
        return PendingTurn(
            session_id=self.session_id,
            user_id=self.user_id,
            texts=list(self.texts),
            media=self.media,
        )


class MessageDebouncer:
    def __init__(
        self,
        idle_seconds: float = 6.0,
        max_wait_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_seconds = idle_seconds
        self.max_wait_seconds = max_wait_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._buffers: dict[str, PendingBuffer] = {}
        self._closed = False

    def add_text(self, session_id: str, user_id: str, text: str, on_flush: Callable[[PendingTurn], None]) -> None:
        text = (text or "").strip()
        if not text:
            return
        self._add(session_id, user_id, on_flush, text=text)

    def add_media(
        self,
        session_id: str,
        user_id: str,
        media: PendingMedia,
        on_flush: Callable[[PendingTurn], None],
    ) -> None:
        self._add(session_id, user_id, on_flush, media=media)

    def _add(
        self,
        session_id: str,
        user_id: str,
        on_flush: Callable[[PendingTurn], None],
        text: Optional[str] = None,
        media: Optional[PendingMedia] = None,
    ) -> None:
        flushed: list[tuple[PendingTurn, Callable[[PendingTurn], None]]] = []
        with self._lock:
            if self._closed:
                logger.warning(f"Debouncer closed, message dropped: session_id={session_id}")
                return
            buffer = self._buffers.get(session_id)

            # one media item per logical turn
            if buffer is not None and media is not None and buffer.media is not None:
                flushed.append(self._detach_locked(buffer))
                buffer = None

            if buffer is None:
                buffer = PendingBuffer(session_id=session_id, user_id=user_id, started_at=self.clock())
                self._buffers[session_id] = buffer

            buffer.on_flush = on_flush
            if user_id:
                buffer.user_id = user_id
            if text:
                buffer.texts.append(text)
            if media is not None:
                buffer.media = media

            if self.clock() - buffer.started_at >= self.max_wait_seconds:
                flushed.append(self._detach_locked(buffer))
            else:
                self._arm_locked(buffer)

        for turn, callback in flushed:
            self._dispatch(turn, callback)

    def _arm_locked(self, buffer: PendingBuffer) -> None:
        if buffer.timer is not None:
            buffer.timer.cancel()
        timer = threading.Timer(self.idle_seconds, self._on_timer, args=(buffer.session_id,))
        timer.daemon = True
        buffer.timer = timer
        timer.start()

    def _detach_locked(self, buffer: PendingBuffer) -> tuple[PendingTurn, Callable[[PendingTurn], None]]:
        if buffer.timer is not None:
            buffer.timer.cancel()
            buffer.timer = None
        if self._buffers.get(buffer.session_id) is buffer:
            del self._buffers[buffer.session_id]
        return buffer.detach(), buffer.on_flush

    def _on_timer(self, session_id: str) -> None:
        current = threading.current_thread()
        with self._lock:
            buffer = self._buffers.get(session_id)
            # superseded by a newer timer or already flushed
            if buffer is None or buffer.timer is not current:
                return
            turn, callback = self._detach_locked(buffer)
        self._dispatch(turn, callback)

    def flush(self, session_id: str) -> bool:
        """Flush a session immediately. Returns False when nothing was pending."""
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                return False
            turn, callback = self._detach_locked(buffer)
        self._dispatch(turn, callback)
        return True

    def pending_sessions(self) -> list[str]:
        with self._lock:
            return list(self._buffers)

    def close(self) -> None:
        """Stop accepting messages and flush every pending buffer."""
        with self._lock:
            self._closed = True
            flushed = [self._detach_locked(buffer) for buffer in list(self._buffers.values())]
        if flushed:
            logger.info(f"Debouncer closing, flushing {len(flushed)} pending session(s)")
        for turn, callback in flushed:
            self._dispatch(turn, callback)

    def _dispatch(self, turn: PendingTurn, callback: Optional[Callable[[PendingTurn], None]]) -> None:
        if callback is None:
            return
        logger.info(
            "Debounced turn flushed",
            extra={
                "context": {
                    "session_id": turn.session_id,
                    "texts": len(turn.texts),
                    "media": turn.media.kind if turn.media else None,
                }
            },
        )
        try:
            callback(turn)
        except Exception as e:
            logger.error(f"Debounced turn failed: session_id={turn.session_id} error={e}", exc_info=True)
