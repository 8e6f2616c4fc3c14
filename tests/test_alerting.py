"""
Webhook alert delivery: severity floor, dedupe window, dry-run and
configuration loading.

Run: pytest tests/test_alerting.py -v
"""

import json
from unittest.mock import MagicMock, Mock, patch
import urllib.error

import pytest

from infra.alerting import AlertConfig, AlertService, AlertSeverity


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def alert_config():
    return AlertConfig(
        enabled=True,
        webhook_url="https://test.webhook.com/alert",
        min_severity=AlertSeverity.WARNING,
        dry_run=False,
        timeout=5.0,
        dedupe_seconds=60.0,
    )


@pytest.fixture
def alert_service(alert_config, clock):
    return AlertService(alert_config, clock=clock)


@pytest.fixture
def mock_urllib():
    """Mock urllib for testing webhook calls."""
    with patch('infra.alerting.urllib.request.urlopen') as mock_urlopen:
        mock_response = MagicMock()
        mock_response.status = 200
        mock_response.__enter__ = Mock(return_value=mock_response)
        mock_response.__exit__ = Mock(return_value=False)
        mock_urlopen.return_value = mock_response
        yield mock_urlopen


class TestDelivery:
    def test_posts_json_text_payload(self, alert_service, mock_urllib):
        sent = alert_service.notify(AlertSeverity.CRITICAL, "Stream down", "giving up",
                                    {"symbol": "BTC/USDT"})

        assert sent is True
        request = mock_urllib.call_args[0][0]
        assert request.full_url == "https://test.webhook.com/alert"
        payload = json.loads(request.data.decode("utf-8"))
        assert payload["text"] == '[CRITICAL] Stream down | giving up | context={"symbol": "BTC/USDT"}'
        assert mock_urllib.call_args[1]["timeout"] == 5.0

    def test_below_min_severity_is_dropped(self, alert_service, mock_urllib):
        assert alert_service.notify(AlertSeverity.INFO, "Position opened", "LONG") is False
        mock_urllib.assert_not_called()

    def test_webhook_failure_is_logged_not_raised(self, alert_service, mock_urllib):
        mock_urllib.side_effect = urllib.error.URLError("unreachable")
        assert alert_service.notify(AlertSeverity.WARNING, "Engine error", "x") is True


class TestDedupe:
    def test_identical_alerts_within_window_are_deduped(self, alert_service, clock, mock_urllib):
        assert alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        clock.now = 30.0
        assert not alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        clock.now = 59.0
        assert not alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        assert mock_urllib.call_count == 1

    def test_dedupe_expires(self, alert_service, clock, mock_urllib):
        alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        clock.now = 61.0
        assert alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        assert mock_urllib.call_count == 2

    def test_different_messages_are_not_deduped(self, alert_service, mock_urllib):
        alert_service.notify(AlertSeverity.WARNING, "Engine error", "timeout")
        alert_service.notify(AlertSeverity.WARNING, "Engine error", "rate limited")
        alert_service.notify(AlertSeverity.CRITICAL, "Engine error", "timeout")
        assert mock_urllib.call_count == 3


class TestConfig:
    def test_dry_run_never_posts(self, clock, mock_urllib):
        service = AlertService(AlertConfig(enabled=True, webhook_url=None,
                                           min_severity=AlertSeverity.INFO, dry_run=True), clock=clock)
        assert service.is_enabled()
        assert service.notify(AlertSeverity.INFO, "Position opened", "LONG")
        mock_urllib.assert_not_called()

    def test_enabled_without_webhook_disables(self):
        service = AlertService.from_config({"enabled": True, "webhook_env": "LEVELBOUNCE_TEST_UNSET"})
        assert not service.is_enabled()
        assert service.notify(AlertSeverity.CRITICAL, "x", "y") is False

    def test_webhook_from_env(self, monkeypatch):
        monkeypatch.setenv("LEVELBOUNCE_TEST_HOOK", "https://hooks.example/abc")
        service = AlertService.from_config({
            "enabled": True,
            "webhook_env": "LEVELBOUNCE_TEST_HOOK",
            "min_severity": "critical",
            "dedupe_seconds": 10,
        })
        assert service.is_enabled()
        assert service._config.webhook_url == "https://hooks.example/abc"
        assert service._config.min_severity is AlertSeverity.CRITICAL
        assert service._config.dedupe_seconds == 10.0

    def test_severity_parsing(self):
        assert AlertSeverity.from_string("Critical") is AlertSeverity.CRITICAL
        assert AlertSeverity.from_string("bogus") is AlertSeverity.WARNING
        assert AlertSeverity.from_string("", default=AlertSeverity.INFO) is AlertSeverity.INFO
