"""Turns voice, photo and document payloads into chat text."""

import json
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.errors import MalformedInputError
from app.services.intent_service import lexicon
from app.services.llm import OpenAIProvider, strip_code_fences
from app.services.result import Result

logger = get_logger("media_service")

MEDIA_KINDS = ("voice", "photo", "document")
DOCUMENT_TEXT_LIMIT = 20000
DOCUMENT_ARTICLES_LIMIT = 20
DOCUMENT_WORDS_LIMIT = 20
RAW_DOCUMENT_SNIPPET = 1200
QUOTE_DOCUMENT_MIN_HITS = 2

ARTICLE_RE = re.compile(r"\b[а-яa-z]{0,4}\d{3,}[a-zа-я0-9\-]{0,8}\b", re.IGNORECASE)
ARTICLE_CLEAN_RE = re.compile(r"[^A-Z0-9\-]")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
AUDIO_EXTENSIONS = {".ogg", ".mp3", ".wav", ".m4a"}

DOCUMENT_DICTIONARY = [
    "розетка", "выключатель", "рамка", "диммер", "переключатель", "tv", "rj45", "rj11",
    "белый", "черный", "антрацит", "мокко", "тауп", "алюминий", "бронза",
    "jasmart", "fd-серия", "g-серия", "fs-серия",
]

PHOTO_SIGNAL_PROMPT = (
    "Ты анализируешь фото товара электрофурнитуры. Верни строго JSON без пояснений: "
    '{"detected":bool,"product_type":"","brand":"","series":"","color":"","article":"","keywords":["..."]}. '
    "Если не уверен, оставляй пустые строки и detected=false."
)
PHOTO_OCR_PROMPT = (
    "Опиши изображение кратко. Затем извлеки весь видимый текст (OCR). "
    "Ответ в формате: ОПИСАНИЕ: ...\nТЕКСТ: ..."
)


@dataclass
class ProcessedMedia:
    message: str
    user_meta: dict = field(default_factory=dict)


@dataclass
class PhotoSignal:
    detected: bool = False
    product_type: str = ""
    brand: str = ""
    series: str = ""
    color: str = ""
    article: str = ""
    keywords: list[str] = field(default_factory=list)


def detect_message_type(content_type: Optional[str], filename: Optional[str]) -> str:
    ct = (content_type or "").strip().lower()
    ext = PurePath(filename or "").suffix.lower()
    if ct.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return "photo"
    if ct.startswith("audio/") or ext in AUDIO_EXTENSIONS:
        return "voice"
    return "document"


def guess_content_type(content_type: Optional[str], filename: Optional[str]) -> str:
    if content_type and content_type != "application/octet-stream":
        return content_type
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or content_type or "application/octet-stream"


def normalize_article(raw: str) -> str:
    return ARTICLE_CLEAN_RE.sub("", (raw or "").strip().upper())


def extract_document_articles(text: str, limit: int = DOCUMENT_ARTICLES_LIMIT) -> list[str]:
    out: list[str] = []
    for match in ARTICLE_RE.finditer(text or ""):
        article = normalize_article(match.group(0))
        if len(article) < 4 or article in out:
            continue
        out.append(article)
        if len(out) >= limit:
            break
    return out


def extract_document_product_words(text: str, limit: int = DOCUMENT_WORDS_LIMIT) -> list[str]:
    source = (text or "").lower()
    return sorted({word for word in DOCUMENT_DICTIONARY if word in source})[:limit]


def is_likely_quote_document(filename: str, text: str) -> bool:
    source = f"{filename or ''}\n{text or ''}".lower()
    hits = sum(1 for keyword in lexicon("quote_document_keywords") if keyword in source)
    return hits >= QUOTE_DOCUMENT_MIN_HITS


def build_document_search_message(text: str) -> str:
    raw = (text or "").strip()
    if not raw:
        return "Пользователь прислал КП. Подбери товары из каталога по позициям документа."
    parts = extract_document_articles(raw) + extract_document_product_words(raw)
    if not parts:
        return f"Пользователь прислал КП. Подбери товары из каталога по позициям: {raw[:RAW_DOCUMENT_SNIPPET]}"
    return f"Пользователь прислал КП. Подбери товары из каталога по позициям: {' '.join(parts)}"


def build_photo_search_message(signal: PhotoSignal) -> str:
    parts = []
    for label, value in (
        ("артикул", signal.article),
        ("бренд", signal.brand),
        ("серия", signal.series),
        ("тип", signal.product_type),
        ("цвет", signal.color),
    ):
        if value:
            parts.append(f"{label} {value}")
    parts.extend(signal.keywords)
    query = " ".join(parts).strip()
    if not query:
        return "Пользователь прислал фото товара. Найди максимально похожий товар в базе по внешнему виду и названию."
    return f"Пользователь прислал фото товара. Найди максимально похожий товар в базе. Запрос: {query}"


def parse_photo_signal(raw: str) -> PhotoSignal:
    data = json.loads(strip_code_fences(raw))
    if not isinstance(data, dict):
        raise ValueError("photo signal is not an object")
    keywords = data.get("keywords") if isinstance(data.get("keywords"), list) else []
    return PhotoSignal(
        detected=data.get("detected") is True,
        product_type=str(data.get("product_type") or "").strip(),
        brand=str(data.get("brand") or "").strip(),
        series=str(data.get("series") or "").strip(),
        color=str(data.get("color") or "").strip(),
        article=normalize_article(str(data.get("article") or "")),
        keywords=[str(k).strip() for k in keywords if str(k).strip()],
    )


def _append_text(processed: ProcessedMedia, extra_text: str) -> ProcessedMedia:
    if extra_text:
        base = processed.message.strip()
        processed.message = f"{base}\n{extra_text}" if base else extra_text
    return processed


class DocumentExtractor:
    """Apache Tika text extraction. PUT first, POST when the server refuses the verb."""

    METHODS = ("PUT", "POST")

    def __init__(self, tika_url: str, timeout_seconds: float = 30.0):
        self.tika_url = (tika_url or "").rstrip("/")
        self.timeout_seconds = timeout_seconds

    def extract(self, data: bytes, content_type: str) -> str:
        if not self.tika_url:
            raise RuntimeError("TIKA_URL is not configured")
        url = f"{self.tika_url}/tika"
        last_error: Optional[Exception] = None
        for method in self.METHODS:
            try:
                with httpx.Client(timeout=self.timeout_seconds) as client:
                    response = client.request(
                        method,
                        url,
                        content=data,
                        headers={"Content-Type": content_type, "Accept": "text/plain"},
                    )
            except httpx.HTTPError as e:
                logger.warning(f"Tika request failed: method={method} error={e}")
                last_error = e
                continue
            if response.status_code == 405:
                logger.warning(f"Tika refused method={method}, trying next")
                last_error = RuntimeError("tika status 405")
                continue
            if response.status_code != 200:
                raise RuntimeError(f"tika status {response.status_code} ({method}): {response.text[:2048].strip()}")
            logger.info(f"Tika extraction ok: method={method}")
            return response.text[:DOCUMENT_TEXT_LIMIT].strip()
        raise last_error or RuntimeError("tika request failed")


class MediaProcessor:
    def __init__(self, llm: OpenAIProvider, extractor: DocumentExtractor):
        self.llm = llm
        self.extractor = extractor

    def process(
        self,
        kind: Optional[str],
        data: bytes,
        filename: str = "",
        content_type: str = "",
        extra_text: str = "",
    ) -> Result[ProcessedMedia]:
        """Convert a media payload into turn text plus inbound metadata.

        Raises MalformedInputError for empty payloads or unknown kinds;
        collaborator failures come back as a failed Result.
        """
        if not data:
            raise MalformedInputError("file is required")
        content_type = guess_content_type(content_type, filename)
        kind = (kind or "").strip() or detect_message_type(content_type, filename)
        if kind not in MEDIA_KINDS:
            raise MalformedInputError("message_type must be voice, photo, or document")

        logger.info(f"Media received: kind={kind} file={filename} size={len(data)} mime={content_type}")
        handler = {
            "voice": self._voice,
            "photo": self._photo,
            "document": self._document,
        }[kind]
        extra_text = (extra_text or "").strip()
        return handler(data, filename, content_type).map(lambda processed: _append_text(processed, extra_text))

    def _voice(self, data: bytes, filename: str, content_type: str) -> Result[ProcessedMedia]:
        try:
            text = self.llm.transcribe_audio(audio_bytes=data, filename=filename or "voice.ogg", mime_type=content_type)
        except Exception as e:
            logger.error(f"Transcription failed: {e}")
            return Result.failure(str(e), "transcription_failed")
        return Result.success(ProcessedMedia(message=text))

    def _photo(self, data: bytes, filename: str, content_type: str) -> Result[ProcessedMedia]:
        try:
            raw = self.llm.describe_image(
                image_bytes=data,
                mime_type=content_type,
                system_prompt=PHOTO_SIGNAL_PROMPT,
                user_prompt="Определи товар и его признаки.",
                max_tokens=220,
                json_mode=True,
            )
            return Result.success(ProcessedMedia(message=build_photo_search_message(parse_photo_signal(raw))))
        except Exception as e:
            logger.warning(f"Photo product signal failed, falling back to OCR: {e}")

        try:
            description = self.llm.describe_image(
                image_bytes=data,
                mime_type=content_type,
                system_prompt=PHOTO_OCR_PROMPT,
                user_prompt="Проанализируй изображение.",
                max_tokens=300,
            )
        except Exception as e:
            logger.error(f"Image description failed: {e}")
            return Result.failure(str(e), "vision_failed")
        return Result.success(ProcessedMedia(message=description))

    def _document(self, data: bytes, filename: str, content_type: str) -> Result[ProcessedMedia]:
        try:
            text = self.extractor.extract(data, content_type)
        except Exception as e:
            logger.error(f"Document extraction failed: {e}")
            return Result.failure(str(e), "extraction_failed")
        if not text:
            return Result.failure("empty document text", "extraction_empty")

        message = f"Документ: {filename}\n\n{text}"
        if not is_likely_quote_document(filename, message):
            return Result.success(ProcessedMedia(message=message))

        articles = extract_document_articles(message)
        user_meta: dict = {"incoming_quote_pdf": True}
        if articles:
            user_meta["document_articles"] = articles
        return Result.success(ProcessedMedia(message=build_document_search_message(message), user_meta=user_meta))
