import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from app.services.catalog_service import KnowledgeMatch
from app.services.conversation_meta import EscalationState, HistoryMessage
from app.services.escalation_service import (
    DirectorScheduler,
    EscalationLevel,
    EscalationRule,
    EscalationService,
    EscalationTrigger,
    TriggerReason,
    count_consecutive_clarify,
    level_of,
    render_template,
    should_trigger_manager,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
CLARIFY = "Уточните, какой цвет нужен?"


def make_rule(max_clarify=3, timeout=30, keywords=None) -> EscalationRule:
    return EscalationRule(
        trigger=EscalationTrigger(max_consecutive_clarify_questions=max_clarify, negative_keywords=keywords or []),
        manager_template="Чат {session_id}: {last_user_message}",
        director_timeout_minutes=timeout,
        director_template="Менеджер молчит {timeout} мин в {session_id}",
    )


def assistant(content, meta=None, created_at=None):
    return HistoryMessage(role="assistant", content=content, meta=meta or {}, created_at=created_at, sender_type="bot")


def user(content):
    return HistoryMessage(role="user", content=content, sender_type="user")


def admin_reply(created_at):
    return HistoryMessage(role="assistant", content="Здравствуйте, я менеджер", sender_type="human_admin", created_at=created_at)


@pytest.fixture
def telegram():
    telegram = Mock()
    telegram.send_message.return_value = {"ok": True}
    return telegram


@pytest.fixture
def scheduler():
    scheduler = Mock(spec=DirectorScheduler)
    return scheduler


@pytest.fixture
def service(telegram, scheduler):
    return EscalationService(
        telegram=telegram,
        manager_chat_id="tg:100",
        director_chat_id="200",
        history_loader=Mock(return_value=[]),
        scheduler=scheduler,
        now=lambda: NOW,
    )


class TestRuleParsing:
    def test_from_content(self):
        raw = (
            '{"type": "escalation_rule", "manager": {"trigger": {"max_consecutive_clarify_questions": 3, '
            '"negative_keywords": ["жалоба"]}, "message_template": "M {session_id}"}, '
            '"director": {"timeout_minutes": 15, "message_template": "D"}}'
        )
        rule = EscalationRule.from_content(raw)

        assert rule.trigger.max_consecutive_clarify_questions == 3
        assert rule.trigger.negative_keywords == ["жалоба"]
        assert rule.manager_template == "M {session_id}"
        assert rule.director_timeout_minutes == 15

    def test_other_type_ignored(self):
        assert EscalationRule.from_content('{"type": "faq"}') is None

    def test_plain_text_ignored(self):
        assert EscalationRule.from_content("Доставка бесплатно") is None

    def test_from_matches_uses_top_match(self):
        matches = [KnowledgeMatch(id=1, content='{"type": "escalation_rule"}')]
        assert EscalationRule.from_matches(matches) is not None
        assert EscalationRule.from_matches([]) is None


class TestHelpers:
    def test_consecutive_clarify_counts_current_answer(self):
        history = [assistant("Вот розетки."), user("а какие есть?"), assistant(CLARIFY), user("не знаю")]
        assert count_consecutive_clarify(history, "Что именно нужно?") == 2

    def test_non_clarifying_answer_resets_count(self):
        history = [assistant(CLARIFY), assistant(CLARIFY)]
        assert count_consecutive_clarify(history, "Вот варианты.") == 0

    def test_trigger_by_keyword(self):
        trigger = EscalationTrigger(max_consecutive_clarify_questions=3, negative_keywords=["Ужас"])
        assert should_trigger_manager("это ужас какой-то", 0, trigger) == TriggerReason.NEGATIVE_KEYWORD

    def test_no_trigger_below_threshold(self):
        trigger = EscalationTrigger(max_consecutive_clarify_questions=3)
        assert should_trigger_manager("ок", 2, trigger) is None

    def test_render_template_defaults(self):
        text = render_template("", "tg:1", "помогите", 30)
        assert "tg:1" in text
        assert "помогите" in text

    def test_level_of(self):
        assert level_of(None) == EscalationLevel.IDLE
        assert level_of(EscalationState(manager_notified_at="x")) == EscalationLevel.MANAGER_NOTIFIED
        state = EscalationState(manager_notified_at="x", director_notified_at="y")
        assert level_of(state) == EscalationLevel.DIRECTOR_NOTIFIED


class TestManagerNotification:
    def test_fires_on_third_clarifying_question(self, service, telegram, scheduler):
        history = [assistant(CLARIFY), user("не знаю"), assistant("Какая серия интересует?"), user("любая")]

        state = service.evaluate("tg:1", "любая", "Уточните, какой бренд?", history, make_rule())

        assert state.manager_notified_at == "2026-03-10T12:00:00Z"
        assert state.last_escalation_reason == "clarify_count"
        assert state.last_clarify_count == 3
        telegram.send_message.assert_called_once_with(100, "Чат tg:1: любая")
        scheduler.schedule.assert_called_once()
        assert scheduler.schedule.call_args[0][1] == pytest.approx(30 * 60)

    def test_does_not_fire_twice(self, service, telegram):
        notified = EscalationState(manager_notified_at="2026-03-10T11:55:00Z", last_escalation_reason="clarify_count")
        history = [assistant(CLARIFY, meta={"escalation": notified.to_meta()}), user("?")]

        state = service.evaluate("tg:1", "?", CLARIFY, history, make_rule())

        assert state.manager_notified_at == "2026-03-10T11:55:00Z"
        telegram.send_message.assert_not_called()

    def test_failed_send_does_not_advance(self, service, telegram, scheduler):
        telegram.send_message.return_value = {"ok": False, "error": "timeout"}

        state = service.evaluate("tg:1", "это ужас", "Вот варианты.", [], make_rule(keywords=["ужас"]))

        assert state.manager_notified_at == ""
        scheduler.schedule.assert_not_called()

    def test_human_reply_resets_state(self, service, telegram, scheduler):
        notified = EscalationState(manager_notified_at="2026-03-10T10:00:00Z")
        history = [
            assistant(CLARIFY, meta={"escalation": notified.to_meta()}),
            admin_reply("2026-03-10 10:05:00.123456+00"),
            user("спасибо"),
        ]

        state = service.evaluate("tg:1", "спасибо", "Рад помочь.", history, make_rule())

        assert state.manager_notified_at == ""
        assert level_of(state) == EscalationLevel.IDLE
        scheduler.cancel.assert_called_once_with("tg:1")
        telegram.send_message.assert_not_called()

    def test_fires_again_after_reset(self, service, telegram):
        notified = EscalationState(manager_notified_at="2026-03-10T10:00:00Z")
        history = [
            assistant(CLARIFY, meta={"escalation": notified.to_meta()}),
            admin_reply("2026-03-10T10:05:00Z"),
            user("у меня жалоба"),
        ]

        state = service.evaluate("tg:1", "у меня жалоба", "Понял.", history, make_rule(keywords=["жалоба"]))

        assert state.manager_notified_at == "2026-03-10T12:00:00Z"
        assert state.last_escalation_reason == "negative_keyword"

    def test_missing_rule_or_manager_chat(self, telegram):
        service = EscalationService(telegram, "", "", Mock(), scheduler=Mock(), now=lambda: NOW)
        assert service.evaluate("tg:1", "ужас", CLARIFY, [], make_rule()) is None
        assert service.evaluate("tg:1", "ужас", CLARIFY, [], None) is None

    def test_unparseable_timestamp_blocks_renotify(self, service, telegram):
        history = [assistant(CLARIFY, meta={"escalation": {"manager_notified_at": "вчера"}})]

        state = service.evaluate("tg:1", "ужас", CLARIFY, history, make_rule(keywords=["ужас"]))

        assert state.manager_notified_at == "вчера"
        telegram.send_message.assert_not_called()


class TestDirectorNotification:
    def test_director_due_on_later_turn(self, service, telegram, scheduler):
        notified = EscalationState(manager_notified_at=(NOW - timedelta(minutes=45)).strftime("%Y-%m-%dT%H:%M:%SZ"))
        history = [assistant(CLARIFY, meta={"escalation": notified.to_meta()}), user("ау")]

        state = service.evaluate("tg:1", "ау", "Вот варианты.", history, make_rule(timeout=30))

        assert state.director_notified_at == "2026-03-10T12:00:00Z"
        telegram.send_message.assert_called_once_with(200, "Менеджер молчит 30 мин в tg:1")
        scheduler.cancel.assert_called_with("tg:1")

    def test_director_not_due_before_timeout(self, service, telegram):
        notified = EscalationState(manager_notified_at=(NOW - timedelta(minutes=10)).strftime("%Y-%m-%dT%H:%M:%SZ"))
        history = [assistant(CLARIFY, meta={"escalation": notified.to_meta()})]

        state = service.evaluate("tg:1", "ау", "Вот варианты.", history, make_rule(timeout=30))

        assert state.director_notified_at == ""
        telegram.send_message.assert_not_called()

    def test_deferred_check_sends_when_still_stalled(self, service, telegram):
        manager_at = "2026-03-10T11:00:00Z"
        service.history_loader.return_value = [
            assistant(CLARIFY, meta={"escalation": {"manager_notified_at": manager_at}}),
        ]

        service.check_director("tg:1", "помогите", manager_at, make_rule())

        telegram.send_message.assert_called_once_with(200, "Менеджер молчит 30 мин в tg:1")
        service.history_loader.assert_called_once_with("tg:1", 50)

    def test_deferred_check_skipped_after_human_reply(self, service, telegram):
        manager_at = "2026-03-10T11:00:00Z"
        service.history_loader.return_value = [
            assistant(CLARIFY, meta={"escalation": {"manager_notified_at": manager_at}}),
            admin_reply("2026-03-10T11:10:00Z"),
        ]

        service.check_director("tg:1", "помогите", manager_at, make_rule())

        telegram.send_message.assert_not_called()

    def test_timer_notification_merged_into_next_state(self, service, telegram):
        manager_at = "2026-03-10T11:00:00Z"
        history = [assistant(CLARIFY, meta={"escalation": {"manager_notified_at": manager_at}})]
        service.history_loader.return_value = history
        service.check_director("tg:1", "помогите", manager_at, make_rule())
        telegram.send_message.reset_mock()

        state = service.evaluate("tg:1", "ау", "Вот варианты.", history, make_rule())

        assert state.director_notified_at == "2026-03-10T12:00:00Z"
        telegram.send_message.assert_not_called()


class TestOverlappingTurns:
    def test_stale_history_notifies_manager_once(self, service, telegram):
        stale = [assistant("Вот варианты."), user("это ужас")]
        service.history_loader.return_value = stale
        rule = make_rule(keywords=["ужас"])

        first = service.evaluate("tg:1", "это ужас", "Понял.", stale, rule)
        second = service.evaluate("tg:1", "это ужас", "Понял.", stale, rule)

        assert telegram.send_message.call_count == 1
        assert first.manager_notified_at == second.manager_notified_at == "2026-03-10T12:00:00Z"
        assert second.last_escalation_reason == "negative_keyword"

    def test_parallel_evaluations_notify_manager_once(self, service, telegram):
        stale = [user("это ужас")]
        service.history_loader.return_value = stale
        rule = make_rule(keywords=["ужас"])

        def slow_send(chat_id, text):
            threading.Event().wait(0.05)
            return {"ok": True}

        telegram.send_message.side_effect = slow_send
        threads = [
            threading.Thread(target=service.evaluate, args=("tg:1", "это ужас", "Понял.", stale, rule))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5.0)

        assert telegram.send_message.call_count == 1

    def test_state_is_reread_before_notifying(self, service, telegram):
        notified = EscalationState(manager_notified_at="2026-03-10T11:59:00Z", last_escalation_reason="negative_keyword")
        service.history_loader.return_value = [assistant("Понял.", meta={"escalation": notified.to_meta()})]

        state = service.evaluate("tg:1", "это ужас", "Понял.", [user("это ужас")], make_rule(keywords=["ужас"]))

        assert state.manager_notified_at == "2026-03-10T11:59:00Z"
        telegram.send_message.assert_not_called()
        service.history_loader.assert_called_once_with("tg:1", 50)

    def test_human_reply_in_fresh_history_allows_new_notification(self, service, telegram):
        rule = make_rule(keywords=["ужас"])
        service.evaluate("tg:1", "это ужас", "Понял.", [], rule)
        service.history_loader.return_value = [user("это ужас"), admin_reply("2026-03-10T12:00:30Z")]
        telegram.send_message.reset_mock()

        service.now = lambda: NOW + timedelta(minutes=5)
        state = service.evaluate("tg:1", "опять ужас", "Понял.", [], rule)

        assert state.manager_notified_at == "2026-03-10T12:05:00Z"
        telegram.send_message.assert_called_once()

    def test_deferred_check_sees_director_sent_by_turn(self, service, telegram):
        manager_at = (NOW - timedelta(minutes=45)).strftime("%Y-%m-%dT%H:%M:%SZ")
        history = [assistant(CLARIFY, meta={"escalation": {"manager_notified_at": manager_at}}), user("ау")]
        service.history_loader.return_value = history
        service.evaluate("tg:1", "ау", "Вот варианты.", history, make_rule(timeout=30))
        telegram.send_message.reset_mock()

        service.check_director("tg:1", "ау", manager_at, make_rule(timeout=30))

        telegram.send_message.assert_not_called()


class TestSentRecords:
    def test_dropped_once_store_catches_up(self, service):
        rule = make_rule(keywords=["ужас"])
        state = service.evaluate("tg:1", "это ужас", "Понял.", [], rule)
        assert service.pending_notifications() == 1

        service.history_loader.return_value = [assistant("Понял.", meta={"escalation": state.to_meta()})]
        service.evaluate("tg:1", "ок", "Вот варианты.", [], rule)

        assert service.pending_notifications() == 0

    def test_old_records_pruned(self, telegram, scheduler):
        clock = {"now": NOW}
        service = EscalationService(
            telegram=telegram,
            manager_chat_id="100",
            director_chat_id="200",
            history_loader=Mock(return_value=[]),
            scheduler=scheduler,
            now=lambda: clock["now"],
        )
        rule = make_rule(keywords=["ужас"])
        service.evaluate("tg:1", "это ужас", "Понял.", [], rule)

        clock["now"] = NOW + timedelta(hours=25)
        service.evaluate("tg:2", "это ужас", "Понял.", [], rule)

        assert service.pending_notifications() == 1

    def test_reset_forgets_record(self, service):
        rule = make_rule(keywords=["ужас"])
        service.evaluate("tg:1", "это ужас", "Понял.", [], rule)
        service.history_loader.return_value = [admin_reply("2026-03-10T12:00:30Z")]
        service.now = lambda: NOW + timedelta(minutes=1)

        state = service.evaluate("tg:1", "спасибо", "Рад помочь.", [], rule)

        assert state.manager_notified_at == ""
        assert service.pending_notifications() == 0


class TestDirectorScheduler:
    def test_schedule_replaces_previous_timer(self):
        scheduler = DirectorScheduler()
        fired = []
        done = threading.Event()
        try:
            scheduler.schedule("tg:1", 0.5, lambda: fired.append("old"))
            scheduler.schedule("tg:1", 0.05, lambda: (fired.append("new"), done.set()))
            assert done.wait(2.0)
        finally:
            scheduler.close()

        assert fired == ["new"]

    def test_cancel_prevents_fire(self):
        scheduler = DirectorScheduler()
        fired = []
        try:
            scheduler.schedule("tg:1", 0.05, lambda: fired.append(1))
            scheduler.cancel("tg:1")
            assert scheduler.is_pending("tg:1") is False
            threading.Event().wait(0.15)
        finally:
            scheduler.close()

        assert fired == []
