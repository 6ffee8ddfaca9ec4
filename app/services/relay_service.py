from app.logging_config import get_logger
from app.services.session_store import SessionStore
from app.services.telegram_channel import chat_id_for_session
from app.services.telegram_service import TelegramService

logger = get_logger("relay_service")

RELAY_BATCH_LIMIT = 100


class ManagerRelay:
    """Forwards staff replies written to the store into Telegram chats that are in human mode."""

    def __init__(self, store: SessionStore, telegram: TelegramService):
        self.store = store
        self.telegram = telegram
        self.last_id = 0
        self.started = False

    def start(self) -> None:
        try:
            self.last_id = self.store.latest_relay_message_id()
        except Exception as e:
            logger.error(f"Relay init failed: {e}")
        self.started = True
        logger.info(f"Relay started: last_id={self.last_id}")

    def poll_once(self) -> int:
        """Forward one batch; returns the number of messages sent."""
        if not self.started:
            self.start()
        messages = self.store.fetch_relay_messages(self.last_id, RELAY_BATCH_LIMIT)
        sent = 0
        for message in messages:
            chat_id = chat_id_for_session(message.session_id or "")
            if chat_id and (message.content or "").strip():
                try:
                    human_mode = self.store.is_human_mode(message.session_id)
                except Exception as e:
                    logger.warning(f"Relay human mode check failed: session_id={message.session_id} error={e}")
                    human_mode = False
                if human_mode:
                    result = self.telegram.send_message(chat_id, message.content)
                    if result.get("ok"):
                        sent += 1
                    logger.info(f"Relay forward: session_id={message.session_id} msg_id={message.id}")
                else:
                    logger.debug(f"Relay skip, human mode off: session_id={message.session_id} msg_id={message.id}")
            if message.id > self.last_id:
                self.last_id = message.id
        return sent
