import json
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml

from app.logging_config import get_logger
from app.services.conversation_meta import HistoryMessage, has_recent_quote_offer
from app.services.llm import LLMProvider, strip_code_fences

logger = get_logger("intent_service")

_LEXICON_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "sales_lexicon.yaml"

FOLLOW_UP_MAX_WORDS = 3
SHORT_YES_MAX_WORDS = 2

PRODUCT_DECISION_PROMPT = (
    "Ты определяешь, нужно ли искать товары. Отвечай строго JSON без пояснений. "
    'Формат: {"need_products": true|false}. '
    "true — если пользователь явно просит подобрать/показать/найти/купить товар, цену или характеристики. "
    "false — если просит только консультацию или инструкцию."
)


class AssortmentKind(str, Enum):
    COLORS = "colors"
    BRANDS = "brands"
    SERIES = "series"
    TYPES = "types"


@lru_cache(maxsize=2)
def _load_lexicon(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def lexicon(key: str) -> list[str]:
    value = _load_lexicon(_LEXICON_PATH).get(key)
    return [str(item) for item in value] if isinstance(value, list) else []


def _normalize(text: str) -> str:
    return (text or "").strip().lower()


def _contains_any(text: str, needles: list[str]) -> bool:
    return any(needle in text for needle in needles)


def _first_match(text: str, stems: list[str]) -> Optional[str]:
    for stem in stems:
        if stem in text:
            return stem
    return None


def is_ping_message(message: str) -> bool:
    """Liveness checks like "вы тут?" or "алло"."""
    text = _normalize(message)
    if not text:
        return False
    return _contains_any(text, lexicon("ping_phrases"))


def detect_assortment_query(message: str) -> Optional[AssortmentKind]:
    text = _normalize(message)
    if not text:
        return None
    patterns = _load_lexicon(_LEXICON_PATH).get("assortment_patterns") or {}
    for kind in AssortmentKind:
        if _contains_any(text, [str(p) for p in patterns.get(kind.value) or []]):
            return kind
    return None


def is_affirmative(message: str) -> bool:
    text = _normalize(message)
    if _contains_any(text, lexicon("negative_phrases")):
        return False
    return _contains_any(text, lexicon("affirmative_words"))


def is_short_yes(message: str) -> bool:
    text = _normalize(message)
    words = text.split()
    if not words or len(words) > SHORT_YES_MAX_WORDS:
        return False
    return not _contains_any(text, lexicon("short_yes_blockers"))


def detect_quote_intent(message: str, history: list[HistoryMessage]) -> bool:
    """Explicit quote keywords, or a bare "yes" right after a quote offer."""
    text = _normalize(message)
    if not text:
        return False
    if _contains_any(text, lexicon("quote_keywords")):
        return True
    return has_recent_quote_offer(history) and is_affirmative(text) and is_short_yes(text)


def extract_slots(message: str) -> dict[str, str]:
    text = _normalize(message)
    if not text:
        return {}
    slots = {}
    color = _first_match(text, lexicon("color_stems"))
    if color:
        slots["last_color"] = color
    product_type = _first_match(text, lexicon("product_type_stems"))
    if product_type:
        slots["last_product_type"] = product_type
    return slots


def is_likely_product_query(message: str) -> bool:
    text = _normalize(message)
    if not text:
        return False
    return _contains_any(text, lexicon("product_type_stems"))


def is_follow_up_message(message: str) -> bool:
    words = (message or "").split()
    return 0 < len(words) <= FOLLOW_UP_MAX_WORDS


def is_clarifying_question(text: str) -> bool:
    if "?" not in (text or ""):
        return False
    return _contains_any(text.lower(), lexicon("clarify_stems"))


def decide_product_search(llm: LLMProvider, message: str) -> bool:
    """Ask the model whether the message needs a catalog search.

    Any failure (transport, empty output, invalid JSON) answers True so a
    product request is never silently dropped.
    """
    try:
        raw = llm.complete(
            PRODUCT_DECISION_PROMPT,
            f"Сообщение клиента: {message}",
            max_tokens=20,
            json_mode=True,
        )
        decision = json.loads(strip_code_fences(raw))
        need = decision.get("need_products") if isinstance(decision, dict) else None
        if not isinstance(need, bool):
            raise ValueError(f"invalid decision payload: {raw!r}")
        return need
    except Exception as e:
        logger.warning(f"Product decision failed, assuming products needed: {e}")
        return True
