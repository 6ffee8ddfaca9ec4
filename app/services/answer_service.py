from typing import Optional

from app.logging_config import get_logger
from app.services.catalog_service import CatalogService, KnowledgeMatch, ProductMatch
from app.services.conversation_meta import HistoryMessage, latest_summary
from app.services.intent_service import AssortmentKind
from app.services.llm import LLMProvider

logger = get_logger("answer_service")

CONTEXT_PRODUCTS_LIMIT = 5
CONTEXT_HISTORY_WINDOW = 12
SUMMARY_HISTORY_WINDOW = 10
ASSORTMENT_DISPLAY_LIMIT = 20

PING_REPLY = "Да, я здесь. Чем могу помочь?"
FALLBACK_ANSWER = "Нашёл несколько вариантов. Уточните, пожалуйста, что именно нужно (тип/серия/цвет)."
QUOTE_OFFER = "Могу собрать КП — собрать?"
QUOTE_AUDIT_MESSAGE = "Сформировано КП"
ASSORTMENT_EMPTY = "Сейчас нет данных по ассортименту. Уточните, что именно ищете."

ANSWER_SYSTEM_PROMPT = (
    "Ты — консультант по электрофурнитуре. Отвечай коротко (2–4 предложения). "
    "Никогда не выдумывай товары, бренды, модели или характеристики. "
    'Используй только то, что есть в списке "Товары" в контексте. '
    "Если товаров нет — так и скажи и задай 1 уточняющий вопрос. Не повторяй вопросы. "
    "Не навязывай доп. функции. Все цены указывай в тенге (₸), не упоминай рубли. "
    'Если в контексте есть раздел "Правило", следуй ему строго. '
    'Если вопрос про связь/проверку присутствия ("вы тут?", "алло?") — ответь кратко без ссылок и без новых предложений. '
    "Если пользователь уточняет конкретику — не меняй тему и не предлагай новые товары."
)

SUMMARY_SYSTEM_PROMPT = (
    "Сделай краткую сводку диалога в 3-6 строках. Формат: \n"
    "- Пользователь ищет: ...\n- Требования: ...\n- Контекст/договоренности: ...\n"
    "Сводка должна быть лаконичной."
)

ASSORTMENT_SOURCES = {
    AssortmentKind.COLORS: ("colors", "name", 100),
    AssortmentKind.BRANDS: ("brands", "name", 100),
    AssortmentKind.SERIES: ("product_series", "name", 100),
    AssortmentKind.TYPES: ("products_full", "product_type", 500),
}

ASSORTMENT_TEMPLATES = {
    AssortmentKind.COLORS: "Доступные цвета: {values}. Уточните тип товара (розетки/выключатели/рамки).",
    AssortmentKind.BRANDS: "Доступные бренды: {values}. Уточните тип товара и цвет.",
    AssortmentKind.SERIES: "Доступные серии: {values}. Уточните тип товара и цвет.",
    AssortmentKind.TYPES: "Доступные типы: {values}. Уточните цвет или серию.",
}

SLOT_LABELS = {
    "last_color": "цвет",
    "last_product_type": "тип товара",
}


def format_assortment(kind: AssortmentKind, values: list[str]) -> str:
    if not values:
        return ASSORTMENT_EMPTY
    shown = ", ".join(values[:ASSORTMENT_DISPLAY_LIMIT])
    return ASSORTMENT_TEMPLATES[kind].format(values=shown)


def lookup_assortment(catalog: CatalogService, kind: AssortmentKind) -> str:
    table, column, limit = ASSORTMENT_SOURCES[kind]
    return format_assortment(kind, catalog.distinct_values(table, column, limit))


def _role_label(role: str) -> str:
    return "Ассистент: " if (role or "").strip().lower() == "assistant" else "Пользователь: "


def _meta_text(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_context(
    history: list[HistoryMessage],
    products: list[ProductMatch],
    knowledge: list[KnowledgeMatch],
    summary: str = "",
    slots: Optional[dict[str, str]] = None,
) -> str:
    lines: list[str] = []

    if summary:
        lines.append("Сводка:")
        lines.append(summary)
        lines.append("")

    known_slots = [f"{SLOT_LABELS.get(k, k)}: {v}" for k, v in (slots or {}).items() if v]
    if known_slots:
        lines.append("Известно о запросе: " + "; ".join(known_slots))
        lines.append("")

    window = history[-CONTEXT_HISTORY_WINDOW:]
    if not window:
        lines.append("История: нет.")
    else:
        lines.append("История:")
        for message in window:
            lines.append(_role_label(message.role) + message.content)
        lines.append("")

    if not products:
        lines.append("Товары: не найдено.")
    else:
        lines.append("Товары:")
        for product in products[:CONTEXT_PRODUCTS_LIMIT]:
            line = "- " + product.content
            meta = product.metadata or {}
            if "price" in meta:
                line += " | Цена: " + _meta_text(meta["price"])
            if "brand" in meta:
                line += " | Бренд: " + _meta_text(meta["brand"])
            lines.append(line)

    lines.append("")
    if not knowledge:
        lines.append("Методички: не найдено.")
    else:
        top = knowledge[0]
        lines.append("Правило:")
        topic = (top.metadata or {}).get("topic")
        if topic:
            lines.append(str(topic))
        lines.append(top.content)

    return "\n".join(lines) + "\n"


def generate_answer(llm: LLMProvider, message: str, context: str) -> str:
    """Model answer, or the canned fallback when the model returns nothing. Transport errors propagate."""
    answer = llm.complete(
        ANSWER_SYSTEM_PROMPT,
        f"Вопрос клиента: {message}\n\nКонтекст:\n{context}",
        max_tokens=350,
    )
    return answer or FALLBACK_ANSWER


def append_product_links(answer: str, products: list[ProductMatch], base_url: str) -> str:
    base = base_url.rstrip("/")
    links = "\n".join(f"{base}/products/{product.id}" for product in products)
    return f"{answer.strip()}\n\nСсылки на товары:\n{links}".strip()


def append_quote_offer(answer: str) -> str:
    return f"{answer.strip()}\n\n{QUOTE_OFFER}"


def summarize_history(llm: LLMProvider, history: list[HistoryMessage], answer: str) -> str:
    parts: list[str] = []
    previous = latest_summary(history)
    if previous:
        parts.append(f"Предыдущая сводка:\n{previous}\n")
    parts.append("Последние сообщения:")
    for message in history[-SUMMARY_HISTORY_WINDOW:]:
        parts.append(_role_label(message.role) + message.content)
    if answer.strip():
        parts.append(f"Ассистент (новый ответ): {answer.strip()}")
    return llm.complete(SUMMARY_SYSTEM_PROMPT, "\n".join(parts) + "\n", max_tokens=200)
