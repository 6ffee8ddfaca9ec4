"""Telegram channel: webhook updates in, debounced turns out, replies back to the chat."""

from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from app.logging_config import get_logger
from app.schemas.telegram import TelegramMessage, TelegramUpdate
from app.services.debounce_service import MessageDebouncer, PendingMedia, PendingTurn
from app.services.errors import TurnError
from app.services.media_service import MediaProcessor
from app.services.telegram_service import TelegramService
from app.services.turn_service import TurnKind, TurnOrchestrator, TurnRequest

logger = get_logger("telegram_channel")

SESSION_PREFIX = "tg:"
DOWNLOAD_FAILED_REPLY = "Не удалось загрузить файл."
MEDIA_FAILED_REPLY = "Ошибка обработки файла."
TURN_FAILED_REPLY = "Ошибка обработки запроса."


def session_id_for_chat(chat_id: int) -> str:
    return f"{SESSION_PREFIX}{chat_id}"


def chat_id_for_session(session_id: str) -> Optional[str]:
    if not session_id.startswith(SESSION_PREFIX):
        return None
    return session_id[len(SESSION_PREFIX):] or None


class TelegramChannel:
    def __init__(
        self,
        telegram: TelegramService,
        debouncer: MessageDebouncer,
        orchestrator: TurnOrchestrator,
        media: MediaProcessor,
        max_workers: int = 4,
    ):
        self.telegram = telegram
        self.debouncer = debouncer
        self.orchestrator = orchestrator
        self.media = media
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tg-turn")

    def handle_update(self, update: TelegramUpdate) -> bool:
        """Queue the update's content for its session; False when nothing actionable."""
        message = update.message
        if message is None:
            return False

        chat_id = message.chat.id
        session_id = session_id_for_chat(chat_id)
        user_id = str(message.from_user.id) if message.from_user else ""

        media = self._pending_media(message)
        text = (message.text or "").strip()
        if media is None and not text:
            logger.debug(f"Telegram update without content: update_id={update.update_id}")
            return False

        self.telegram.send_chat_action(chat_id, "typing")

        if media is not None:
            if not media.data:
                self.telegram.send_message(chat_id, DOWNLOAD_FAILED_REPLY)
                return False
            self.debouncer.add_media(session_id, user_id, media, self._on_flush)
            if media.caption:
                self.debouncer.add_text(session_id, user_id, media.caption, self._on_flush)
            return True

        self.debouncer.add_text(session_id, user_id, text, self._on_flush)
        return True

    def _pending_media(self, message: TelegramMessage) -> Optional[PendingMedia]:
        if message.voice is not None:
            file_id, kind = message.voice.file_id, "voice"
            filename, mime_type = "voice.ogg", message.voice.mime_type or "audio/ogg"
        elif message.document is not None:
            file_id, kind = message.document.file_id, "document"
            filename = message.document.file_name or "document"
            mime_type = message.document.mime_type or ""
        elif message.largest_photo is not None:
            file_id, kind = message.largest_photo.file_id, "photo"
            filename, mime_type = "photo.jpg", "image/jpeg"
        else:
            return None

        try:
            data = self.telegram.download_file(file_id)
        except Exception as e:
            logger.error(f"Telegram file download failed: kind={kind} error={e}")
            data = b""
        return PendingMedia(
            kind=kind,
            data=data,
            filename=filename,
            mime_type=mime_type,
            caption=(message.caption or "").strip(),
        )

    def _on_flush(self, turn: PendingTurn) -> None:
        # cap flushes run in the webhook thread; turns go to the pool either way
        self._executor.submit(self.process_turn, turn)

    def process_turn(self, turn: PendingTurn) -> None:
        chat_id = chat_id_for_session(turn.session_id)
        if chat_id is None:
            return

        message = turn.text
        user_meta: dict = {}
        if turn.media is not None:
            try:
                result = self.media.process(
                    turn.media.kind,
                    turn.media.data,
                    filename=turn.media.filename,
                    content_type=turn.media.mime_type,
                    extra_text=turn.text,
                )
            except TurnError as e:
                logger.warning(f"Telegram media rejected: session_id={turn.session_id} error={e}")
                result = None
            if result is None or not result.ok:
                self.telegram.send_message(chat_id, MEDIA_FAILED_REPLY)
                return
            message = result.value.message
            user_meta = result.value.user_meta

        try:
            outcome = self.orchestrator.handle(
                TurnRequest(
                    message=message,
                    session_id=turn.session_id,
                    user_id=turn.user_id,
                    user_meta=user_meta,
                )
            )
        except Exception as e:
            logger.error(f"Telegram turn failed: session_id={turn.session_id} error={e}")
            self.telegram.send_message(chat_id, MEDIA_FAILED_REPLY if turn.media is not None else TURN_FAILED_REPLY)
            return

        if outcome.kind == TurnKind.PDF and outcome.pdf:
            self.telegram.send_document(chat_id, outcome.filename or "KP.pdf", outcome.pdf)
        elif outcome.answer.strip():
            self.telegram.send_message(chat_id, outcome.answer)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
