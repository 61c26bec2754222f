"""
Discord notifier: severity filter, dedupe window, per-minute rate limit and
webhook delivery.
"""
import json
import urllib.error
from unittest.mock import MagicMock, Mock, patch

import pytest

from core.events import EventBus, EventType
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from tests.helpers import FakeClock


def _config(**overrides) -> AlertConfig:
    values = dict(
        enabled=True,
        webhook_url="https://discord.test/api/webhooks/1/abc",
        min_severity=AlertSeverity.INFO,
        dry_run=False,
        timeout=5.0,
        dedupe_seconds=60.0,
        rate_limit_per_minute=30,
    )
    values.update(overrides)
    return AlertConfig(**values)


@pytest.fixture
def mock_urlopen():
    with patch("infra.alerting.urllib.request.urlopen") as urlopen:
        response = MagicMock()
        response.status = 204
        response.__enter__ = Mock(return_value=response)
        response.__exit__ = Mock(return_value=False)
        urlopen.return_value = response
        yield urlopen


@pytest.fixture
def clock():
    return FakeClock(start=0.0)


class TestDelivery:
    def test_posts_embed_to_webhook(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)

        sent = service.notify(AlertSeverity.INFO, "🟢 BUY BONK", "Bought", context={"score": 62.0})

        assert sent is True
        request = mock_urlopen.call_args[0][0]
        assert request.full_url == "https://discord.test/api/webhooks/1/abc"
        embed = json.loads(request.data.decode("utf-8"))["embeds"][0]
        assert embed["title"] == "🟢 BUY BONK"
        assert embed["fields"] == [{"name": "Score", "value": "62", "inline": True}]
        assert embed["footer"]["text"].endswith("| info")

    def test_network_failure_returns_false(self, mock_urlopen, clock):
        mock_urlopen.side_effect = urllib.error.URLError("unreachable")
        service = AlertService(_config(), clock=clock)

        assert service.notify(AlertSeverity.WARNING, "title", "msg") is False
        assert service.sent_count == 0

    def test_dry_run_logs_instead_of_posting(self, mock_urlopen, clock):
        service = AlertService(_config(dry_run=True, webhook_url=None), clock=clock)

        assert service.is_enabled()
        assert service.notify(AlertSeverity.INFO, "title", "msg") is True
        mock_urlopen.assert_not_called()

    def test_disabled_without_webhook(self, mock_urlopen, clock):
        service = AlertService(_config(webhook_url=None), clock=clock)

        assert not service.is_enabled()
        assert service.notify(AlertSeverity.CRITICAL, "title", "msg") is False
        mock_urlopen.assert_not_called()

    def test_min_severity_filters(self, mock_urlopen, clock):
        service = AlertService(_config(min_severity=AlertSeverity.WARNING), clock=clock)

        assert service.notify(AlertSeverity.INFO, "info", "msg") is False
        assert service.notify(AlertSeverity.WARNING, "warn", "msg") is True
        assert mock_urlopen.call_count == 1


class TestDedupeAndRateLimit:
    def test_identical_alert_deduped_within_window(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)

        assert service.notify(AlertSeverity.CRITICAL, "Daily loss", "paused") is True
        clock.advance(30)
        assert service.notify(AlertSeverity.CRITICAL, "Daily loss", "paused") is False
        assert mock_urlopen.call_count == 1

        clock.advance(31)  # 61s after the first occurrence
        assert service.notify(AlertSeverity.CRITICAL, "Daily loss", "paused") is True
        assert mock_urlopen.call_count == 2

    def test_different_messages_not_deduped(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)

        assert service.notify(AlertSeverity.INFO, "BUY A", "msg")
        assert service.notify(AlertSeverity.INFO, "BUY B", "msg")

    def test_thirty_per_minute_then_drop(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)

        results = [service.notify(AlertSeverity.INFO, f"event {i}", "msg") for i in range(31)]

        assert results.count(True) == 30
        assert results[-1] is False
        assert service.dropped_count == 1

        clock.advance(61)
        assert service.notify(AlertSeverity.INFO, "event after window", "msg") is True


class TestEventSink:
    def test_trade_records_are_not_notifications(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)
        bus = EventBus()
        bus.subscribe(service.handle_event)

        bus.emit(EventType.TRADE_RECORD, title="trade", record=None)
        bus.dispatch_pending()

        mock_urlopen.assert_not_called()

    def test_event_fields_and_reasons_rendered(self, mock_urlopen, clock):
        service = AlertService(_config(), clock=clock)
        bus = EventBus()
        bus.subscribe(service.handle_event)

        bus.emit(
            EventType.DETECTION,
            title="🔥 BONK detected",
            message="Score 80/100",
            score=80,
            reasons=["volume spike", "fresh pool"],
            internal_flag=True,
        )
        bus.dispatch_pending()

        embed = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))["embeds"][0]
        assert "• volume spike" in embed["description"]
        assert [f["name"] for f in embed["fields"]] == ["Score"]
        assert embed["color"] == 0x00FF88

    def test_risk_alert_is_critical(self, mock_urlopen, clock):
        service = AlertService(_config(min_severity=AlertSeverity.CRITICAL), clock=clock)
        bus = EventBus()
        bus.subscribe(service.handle_event)

        bus.emit(EventType.BUY, title="buy")
        bus.emit(EventType.RISK_ALERT, title="🚨 Daily loss limit")
        bus.dispatch_pending()

        assert mock_urlopen.call_count == 1


class TestFromConfig:
    def test_webhook_expanded_from_environment(self, monkeypatch):
        monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test/hook")

        service = AlertService.from_config({"enabled": True, "webhook_url": "${DISCORD_WEBHOOK_URL}"})

        assert service.is_enabled()
        assert service._config.webhook_url == "https://discord.test/hook"

    def test_unset_variable_disables(self, monkeypatch):
        monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)

        service = AlertService.from_config({"enabled": True, "webhook_url": "${DISCORD_WEBHOOK_URL}"})

        assert not service.is_enabled()

    def test_defaults(self):
        service = AlertService.from_config(None)

        assert not service.is_enabled()
        assert service._config.rate_limit_per_minute == 30
        assert service._config.min_severity == AlertSeverity.INFO
