"""Tests for cooldown-gated attack alerts."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from errors import PersistenceFailure
from notifier import Notifier, build_message
from state_store import LAST_NOTIFICATION, DatabaseStateStore

RECIPIENTS = ("ops@acme-corp.io",)


@pytest.fixture
def mailer():
    m = MagicMock()
    m.send.return_value = (True, None)
    return m


@pytest.fixture
def state(session_factory):
    return DatabaseStateStore(session_factory)


@pytest.fixture
def notifier(mailer, state, clock):
    return Notifier(mailer, state, cooldown_seconds=900, clock=clock)


@pytest.fixture
def enabled(make_config):
    return make_config(notifications_enabled=True, notification_recipients=RECIPIENTS)


def test_sends_alert(notifier, mailer, enabled):
    assert notifier.maybe_notify(enabled, "1.2.3.4", 42, "curl/8.0") is True

    recipients, subject, body = mailer.send.call_args[0]
    assert recipients == ["ops@acme-corp.io"]
    assert "1.2.3.4" in subject
    assert "Requests in last minute: 42" in body
    assert "User Agent: curl/8.0" in body


def test_disabled_is_noop(notifier, mailer, make_config):
    config = make_config(notifications_enabled=False, notification_recipients=RECIPIENTS)
    assert notifier.maybe_notify(config, "1.2.3.4", 10) is False
    mailer.send.assert_not_called()


def test_no_valid_recipients_is_noop(notifier, mailer, state, make_config):
    config = make_config(notifications_enabled=True, notification_recipients=("nope", ""))
    assert notifier.maybe_notify(config, "1.2.3.4", 10) is False
    mailer.send.assert_not_called()
    assert state.get(LAST_NOTIFICATION) is None


def test_global_cooldown_across_ips(notifier, mailer, enabled, clock):
    """Scenario D: two offenders 10s apart produce one alert."""
    notifier.maybe_notify(enabled, "1.2.3.4", 40)
    clock.advance(seconds=10)
    notifier.maybe_notify(enabled, "5.6.7.8", 55)

    assert mailer.send.call_count == 1


def test_alerts_again_after_cooldown(notifier, mailer, enabled, clock):
    notifier.maybe_notify(enabled, "1.2.3.4", 40)
    clock.advance(seconds=900)
    notifier.maybe_notify(enabled, "1.2.3.4", 40)

    assert mailer.send.call_count == 2


def test_failed_send_still_starts_cooldown(notifier, mailer, enabled, state, clock):
    mailer.send.return_value = (False, "smtp timeout")

    notifier.maybe_notify(enabled, "1.2.3.4", 40)
    clock.advance(seconds=30)
    notifier.maybe_notify(enabled, "1.2.3.4", 40)

    assert mailer.send.call_count == 1
    assert state.get(LAST_NOTIFICATION) is not None


def test_mailer_exception_is_contained(notifier, mailer, enabled):
    mailer.send.side_effect = RuntimeError("boom")
    assert notifier.maybe_notify(enabled, "1.2.3.4", 40) is True


def test_state_failure_skips_alert(mailer, enabled, clock):
    state = MagicMock()
    state.get.side_effect = PersistenceFailure("db down")
    notifier = Notifier(mailer, state, clock=clock)

    assert notifier.maybe_notify(enabled, "1.2.3.4", 40) is False
    mailer.send.assert_not_called()


def test_executor_dispatch(mailer, state, enabled, clock):
    with ThreadPoolExecutor(max_workers=1) as executor:
        notifier = Notifier(mailer, state, executor=executor, clock=clock)
        notifier.maybe_notify(enabled, "1.2.3.4", 40)
    mailer.send.assert_called_once()


def test_cooldown_persists_across_instances(mailer, state, enabled, clock):
    Notifier(mailer, state, clock=clock).maybe_notify(enabled, "1.2.3.4", 40)
    clock.advance(seconds=60)
    Notifier(mailer, state, clock=clock).maybe_notify(enabled, "1.2.3.4", 40)
    assert mailer.send.call_count == 1


def test_build_message(clock):
    subject, body = build_message("1.2.3.4", 7, "ua", clock.now)
    assert subject == "Throttle: mass attack detected from IP 1.2.3.4"
    assert "Time: 2026-10-16 12:00:00 UTC" in body
