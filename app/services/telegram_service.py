from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("telegram_service")


class TelegramService:
    """Bot API client: outgoing messages, documents, chat actions and file downloads."""

    def __init__(self, bot_token: str, base_url: str = "https://api.telegram.org", timeout_seconds: float = 30.0):
        self.bot_token = bot_token
        root = (base_url or "https://api.telegram.org").rstrip("/")
        self.base_url = f"{root}/bot{bot_token}"
        self.file_url = f"{root}/file/bot{bot_token}"
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.bot_token)

    def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        if not self.configured:
            return {"ok": False, "error": "TELEGRAM_BOT_TOKEN is not configured"}
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                if files:
                    response = client.post(url, data=data or {}, files=files)
                else:
                    response = client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e)}

    def send_message(self, chat_id: int | str, text: str, parse_mode: Optional[str] = None) -> dict:
        """Send message to Telegram chat."""
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        return self._make_request("sendMessage", data)

    def send_document(
        self,
        chat_id: int | str,
        filename: str,
        content: bytes,
        mime_type: str = "application/pdf",
        caption: Optional[str] = None,
    ) -> dict:
        """Send in-memory document to Telegram chat."""
        data = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = caption
        return self._make_request("sendDocument", data=data, files={"document": (filename, content, mime_type)})

    def send_chat_action(self, chat_id: int | str, action: str = "typing") -> dict:
        return self._make_request("sendChatAction", {"chat_id": chat_id, "action": action})

    def download_file(self, file_id: str) -> bytes:
        """Resolve file_id via getFile and download the bytes. Raises on failure."""
        result = self._make_request("getFile", {"file_id": file_id})
        file_path = (result.get("result") or {}).get("file_path") if result.get("ok") else None
        if not file_path:
            raise RuntimeError(f"telegram getFile failed: {result.get('description') or result.get('error')}")
        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.get(f"{self.file_url}/{file_path}")
        if response.status_code != 200:
            raise RuntimeError(f"telegram file download status {response.status_code}")
        return response.content


def parse_chat_id(raw: Optional[str]) -> Optional[int]:
    """Chat id from config, accepting an optional "tg:" prefix."""
    text = (raw or "").strip()
    if text.startswith("tg:"):
        text = text[3:]
    if not text:
        return None
    try:
        chat_id = int(text)
    except ValueError:
        return None
    return chat_id or None
