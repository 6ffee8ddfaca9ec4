from unittest.mock import Mock

import pytest

from app.services.conversation_meta import HistoryMessage
from app.services.intent_service import (
    AssortmentKind,
    decide_product_search,
    detect_assortment_query,
    detect_quote_intent,
    extract_slots,
    is_affirmative,
    is_clarifying_question,
    is_follow_up_message,
    is_likely_product_query,
    is_ping_message,
    is_short_yes,
)

OFFER_HISTORY = [
    HistoryMessage(role="user", content="нужна розетка"),
    HistoryMessage(role="assistant", content="Могу собрать КП — собрать?", meta={"kp_offer": True}),
]


class TestPing:
    @pytest.mark.parametrize("message", ["вы тут?", "Алло", "ВЫ ЗДЕСЬ", "ну что, на связи?"])
    def test_ping_phrases(self, message):
        assert is_ping_message(message) is True

    def test_regular_question_is_not_ping(self):
        assert is_ping_message("нужна розетка с заземлением") is False

    def test_empty(self):
        assert is_ping_message("  ") is False


class TestAssortment:
    def test_colors(self):
        assert detect_assortment_query("Какие цвета есть?") == AssortmentKind.COLORS

    def test_brands(self):
        assert detect_assortment_query("какие бренды у вас") == AssortmentKind.BRANDS

    def test_series(self):
        assert detect_assortment_query("какие серии есть") == AssortmentKind.SERIES

    def test_types(self):
        assert detect_assortment_query("какие типы товаров?") == AssortmentKind.TYPES

    def test_product_request_is_not_assortment(self):
        assert detect_assortment_query("белая розетка legrand") is None


class TestQuoteIntent:
    def test_explicit_keyword(self):
        assert detect_quote_intent("Сделайте КП, пожалуйста", []) is True

    def test_yes_after_offer(self):
        assert detect_quote_intent("да", OFFER_HISTORY) is True

    def test_yes_without_offer(self):
        assert detect_quote_intent("да", []) is False

    def test_no_after_offer(self):
        assert detect_quote_intent("нет, не надо", OFFER_HISTORY) is False

    def test_product_reply_after_offer_is_not_yes(self):
        assert detect_quote_intent("да, белую розетку", OFFER_HISTORY) is False

    def test_offer_must_be_latest_assistant_message(self):
        history = OFFER_HISTORY + [HistoryMessage(role="assistant", content="Есть рамки.")]
        assert detect_quote_intent("давай", history) is False


class TestShortReplies:
    def test_affirmative(self):
        assert is_affirmative("Давай") is True
        assert is_affirmative("нет") is False

    def test_short_yes_blocked_by_product_words(self):
        assert is_short_yes("да") is True
        assert is_short_yes("черную рамку") is False
        assert is_short_yes("да конечно собери") is False

    def test_follow_up(self):
        assert is_follow_up_message("а белая?") is True
        assert is_follow_up_message("а есть такая же но белая?") is False
        assert is_follow_up_message("") is False


class TestSlotsAndProducts:
    def test_extract_slots(self):
        assert extract_slots("Нужна черная рамка") == {"last_color": "черн", "last_product_type": "рамк"}

    def test_extract_nothing(self):
        assert extract_slots("здравствуйте") == {}

    def test_likely_product_query(self):
        assert is_likely_product_query("покажите выключатели") is True
        assert is_likely_product_query("как оформить доставку") is False


class TestClarifyingQuestion:
    def test_clarifying(self):
        assert is_clarifying_question("Уточните, пожалуйста, какой цвет?") is True

    def test_question_without_stem(self):
        assert is_clarifying_question("Вам удобно завтра?") is False

    def test_stem_without_question_mark(self):
        assert is_clarifying_question("Уточните цвет.") is False


class TestProductDecision:
    def _llm(self, reply=None, error=None):
        llm = Mock()
        if error is not None:
            llm.complete.side_effect = error
        else:
            llm.complete.return_value = reply
        return llm

    def test_model_says_no(self):
        assert decide_product_search(self._llm('{"need_products": false}'), "как подключить?") is False

    def test_model_says_yes_in_code_fence(self):
        assert decide_product_search(self._llm('```json\n{"need_products": true}\n```'), "нужна розетка") is True

    def test_transport_failure_fails_open(self):
        assert decide_product_search(self._llm(error=RuntimeError("timeout")), "как подключить?") is True

    def test_invalid_json_fails_open(self):
        assert decide_product_search(self._llm("не знаю"), "как подключить?") is True

    def test_missing_field_fails_open(self):
        assert decide_product_search(self._llm('{"answer": false}'), "как подключить?") is True
