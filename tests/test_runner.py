"""
Runner wiring: listeners, the host run loop and the CLI entry point, with
the venue connector swapped for the in-memory FakeExchange.
"""

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from core.events import EngineState
from core.exceptions import InsufficientFunds, NetworkError, StreamError
from core.models import CloseReason, Side, TradeResult
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from runner import main_loop
from runner.listeners import (
    AlertListener,
    MetricsListener,
    ShutdownOnStreamFailure,
    error_kind,
)
from runner.main_loop import TradingBot
from tests.helpers import FakeExchange, make_candles, make_position
from tools.config_validator import load_app_config


def write_config(config_dir: Path, tmp_path: Path, **sections) -> Path:
    config = {
        "state": {"path": str(tmp_path / "state" / "trading_state.json"), "lock_dir": str(tmp_path / "state")},
        "logging": {"level": "INFO", "file": str(tmp_path / "logs" / "levelbounce.log")},
    }
    config.update(sections)
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "app.yaml").write_text(yaml.safe_dump(config))
    return config_dir


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def closed_result(pnl=-0.3):
    return TradeResult(
        position=make_position(),
        exit_price=99.5,
        pnl=pnl,
        reason=CloseReason.STOP_LOSS,
        exit_time=datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc),
        is_loss=pnl < 0,
    )


class TestListeners:
    def test_error_kind(self):
        assert error_kind(NetworkError("x")) == "network"
        assert error_kind(InsufficientFunds("x")) == "insufficient_funds"
        assert error_kind(StreamError("x")) == "stream"
        assert error_kind(KeyError("x")) == "KeyError"

    def test_shutdown_only_on_stream_failure(self):
        event = threading.Event()
        watch = ShutdownOnStreamFailure(event)

        watch.on_error(NetworkError("transient"))
        assert not event.is_set()

        watch.on_error(StreamError("maximum reconnection attempts reached"))
        assert event.is_set()
        assert isinstance(watch.error, StreamError)

    def test_metrics_listener(self, state_path):
        metrics = MetricsRecorder(enabled=False)
        store = StateStore(str(state_path))
        listener = MetricsListener(metrics, store)

        listener.on_position_opened(make_position(side=Side.SHORT))
        listener.on_position_closed(closed_result(-0.3))
        listener.on_error(NetworkError("x"))

        assert metrics.positions_opened == 1
        assert metrics.positions_closed == {"stopLoss": 1}
        assert metrics.realized_pnl == pytest.approx(-0.3)
        assert metrics.errors == {"network": 1}

    def test_alert_listener_severity(self):
        sent = []

        class Recorder(AlertService):
            def _send_alert(self, severity, title, message, context):
                sent.append((severity, title, context))

        alerts = Recorder(AlertConfig(enabled=True, webhook_url="https://hooks.example",
                                      min_severity=AlertSeverity.INFO, dry_run=False))
        listener = AlertListener(alerts, "BTC/USDT")

        listener.on_error(StreamError("gone"))
        listener.on_error(NetworkError("slow"))
        listener.on_position_closed(closed_result())

        assert [s[0] for s in sent] == [AlertSeverity.CRITICAL, AlertSeverity.WARNING, AlertSeverity.INFO]
        assert sent[0][2] == {"kind": "stream"}
        assert sent[2][1] == "BTC/USDT position closed"


@pytest.fixture
def bot(tmp_path):
    config_dir = write_config(tmp_path / "config", tmp_path)
    bot = TradingBot(config=load_app_config(str(config_dir)))
    bot.exchange = FakeExchange(price=100.0, balance=1000.0)
    return bot


class TestTradingBot:
    def test_run_until_stop_requested(self, bot):
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("code", bot.run()))
        runner.start()

        assert wait_for(lambda: bot.engine is not None and bot.engine.engine_state is EngineState.RUNNING)
        bot.request_stop()
        runner.join(10)

        assert result["code"] == 0
        assert bot.engine.engine_state is EngineState.STOPPED
        assert bot.exchange.stream_stopped == 1
        assert not bot.instance_lock.lock_file.exists()

    def test_stream_failure_exits_nonzero(self, bot):
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("code", bot.run()))
        runner.start()

        assert wait_for(lambda: bot.exchange.on_error is not None)
        bot.exchange.on_error(StreamError("maximum reconnection attempts reached"))
        runner.join(10)

        assert result["code"] == 1
        assert bot.engine.engine_state is EngineState.STOPPED

    def test_start_failure_releases_lock(self, bot):
        bot.exchange.init_error = NetworkError("unreachable")
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("code", bot.run()))
        runner.start()
        runner.join(10)

        assert result["code"] == 1
        assert not bot.instance_lock.lock_file.exists()

    def test_second_instance_refused(self, bot, tmp_path, monkeypatch):
        lock_file = tmp_path / "state" / "levelbounce.pid"
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        lock_file.write_text("424242")
        monkeypatch.setattr("infra.instance_lock.SingleInstanceLock._is_process_running",
                            staticmethod(lambda pid: True))
        assert bot.run() == 1
        assert bot.engine is None

    def test_engine_config_is_merged_from_sections(self, bot):
        engine = bot.build_engine()
        assert engine.level_refresh_seconds == 300
        assert engine.enforce_drawdown is True
        assert engine.positions.leverage == 20


class TestMain:
    def test_config_error_returns_one(self, tmp_path, capsys):
        config_dir = write_config(tmp_path / "config", tmp_path, stake={"initial_pct": 9.0, "max_pct": 6.0})
        assert main_loop.main(["--config-dir", str(config_dir)]) == 1
        assert "Configuration Validation Failed" in capsys.readouterr().out

    def test_analyze_prints_snapshot(self, tmp_path, capsys, monkeypatch):
        fake = FakeExchange()
        lows = [110, 108, 100, 107, 109]
        fake.candles = {tf: make_candles(lows) for tf in ("4h", "1h", "15m", "5m")}
        monkeypatch.setattr(main_loop, "BinanceFuturesExchange", lambda **kwargs: fake)
        config_dir = write_config(tmp_path / "config", tmp_path, levels={"candle_limits": {"5m": 100}})

        assert main_loop.main(["--config-dir", str(config_dir), "--analyze"]) == 0

        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot["hold"]["4h"][0]["price"] == 100.0
        assert fake.initialized
        assert fake.requests == []

    def test_testnet_flag_overrides_config(self, tmp_path):
        config_dir = write_config(tmp_path / "config", tmp_path)
        bot = TradingBot(config_dir=str(config_dir), testnet=True)
        assert bot.exchange.testnet is True
