from unittest.mock import Mock

import pytest

from app.services.relay_service import ManagerRelay
from app.services.session_store import RelayMessage


@pytest.fixture
def store():
    store = Mock()
    store.latest_relay_message_id.return_value = 40
    store.fetch_relay_messages.return_value = []
    store.is_human_mode.return_value = True
    return store


@pytest.fixture
def telegram():
    telegram = Mock()
    telegram.send_message.return_value = {"ok": True}
    return telegram


class TestManagerRelay:
    def test_start_skips_existing_messages(self, store, telegram):
        relay = ManagerRelay(store, telegram)

        relay.poll_once()

        assert relay.last_id == 40
        store.fetch_relay_messages.assert_called_once_with(40, 100)

    def test_forwards_human_mode_telegram_sessions(self, store, telegram):
        store.fetch_relay_messages.return_value = [
            RelayMessage(id=41, session_id="tg:555", content="Здравствуйте, это менеджер"),
            RelayMessage(id=42, session_id="web-1", content="Ответ на сайте"),
            RelayMessage(id=43, session_id="tg:556", content="  "),
        ]
        relay = ManagerRelay(store, telegram)

        sent = relay.poll_once()

        assert sent == 1
        telegram.send_message.assert_called_once_with("555", "Здравствуйте, это менеджер")
        assert relay.last_id == 43

    def test_bot_mode_session_skipped(self, store, telegram):
        store.is_human_mode.return_value = False
        store.fetch_relay_messages.return_value = [RelayMessage(id=41, session_id="tg:555", content="Ответ")]
        relay = ManagerRelay(store, telegram)

        assert relay.poll_once() == 0
        telegram.send_message.assert_not_called()
        assert relay.last_id == 41

    def test_failed_send_not_counted(self, store, telegram):
        telegram.send_message.return_value = {"ok": False, "error": "blocked"}
        store.fetch_relay_messages.return_value = [RelayMessage(id=41, session_id="tg:555", content="Ответ")]
        relay = ManagerRelay(store, telegram)

        assert relay.poll_once() == 0
        assert relay.last_id == 41

    def test_init_failure_starts_from_zero(self, store, telegram):
        store.latest_relay_message_id.side_effect = RuntimeError("db down")
        relay = ManagerRelay(store, telegram)

        relay.start()

        assert relay.started is True
        assert relay.last_id == 0

    def test_store_error_propagates(self, store, telegram):
        store.fetch_relay_messages.side_effect = RuntimeError("db down")
        relay = ManagerRelay(store, telegram)

        with pytest.raises(RuntimeError):
            relay.poll_once()
