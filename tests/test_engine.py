"""
Engine state machine tests: startup/teardown, tick routing, the entry and
close guards, level refresh failure handling and listener isolation.
"""

import threading
import time
from datetime import datetime, timezone

import pytest

from core.engine import Engine
from core.events import EngineListener, EngineState
from core.exceptions import InsufficientFunds, NetworkError, StateLoadError, StreamError
from core.models import CloseReason, Side
from core.position_controller import PositionController
from core.risk import RiskGate
from infra.state_store import StateStore
from tests.helpers import FakeExchange, FakeLevelAnalyzer, make_levels, make_position

SYMBOL = "BTC/USDT"
TRADING = {
    "proximity_threshold": 0.001,
    "stop_factor": 0.0016,
    "trail_factor": 0.0016,
    "close": {"limit_retry_delay_seconds": 0, "market_retry_delay_seconds": 0},
}


class RecordingListener(EngineListener):
    def __init__(self):
        self.events = []

    def on_started(self):
        self.events.append(("started",))

    def on_stopped(self):
        self.events.append(("stopped",))

    def on_error(self, error):
        self.events.append(("error", error))

    def on_position_opened(self, position):
        self.events.append(("opened", position))

    def on_position_closed(self, result):
        self.events.append(("closed", result))

    def on_level_update(self, levels):
        self.events.append(("levels", levels))

    def on_stop_loss_updated(self, new_stop):
        self.events.append(("stop", new_stop))

    def names(self):
        return [e[0] for e in self.events]

    def errors(self):
        return [e[1] for e in self.events if e[0] == "error"]


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def exchange():
    return FakeExchange(price=100.0, balance=1000.0)


@pytest.fixture
def analyzer():
    return FakeLevelAnalyzer(make_levels(supports=[100.05], resistances=[102.0, 105.0]))


@pytest.fixture
def store(state_path):
    return StateStore(str(state_path), {"initial_pct": 6.0, "min_pct": 1.5, "max_pct": 6.0})


@pytest.fixture
def risk():
    return RiskGate({"max_daily_losses": 3, "max_drawdown": 0.15}, clock=Clock())


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def engine(exchange, analyzer, store, risk, listener):
    controller = PositionController(exchange, store, SYMBOL, TRADING, sleep=lambda _s: None)
    engine = Engine(exchange, analyzer, store, risk, controller, SYMBOL,
                    config={"level_refresh_seconds": 3600})
    engine.add_listener(listener)
    yield engine
    engine.stop()


class TestLifecycle:
    def test_start_reaches_running(self, engine, exchange, store, risk, listener):
        engine.start()

        assert engine.engine_state is EngineState.RUNNING
        assert exchange.initialized
        assert exchange.stream_started == 1
        assert store.account_balance == 1000.0
        assert store.get_levels() is not None
        assert risk.initial_balance == 1000.0
        assert listener.names() == ["levels", "started"]

    def test_stop_tears_down_and_saves(self, engine, exchange, store, listener):
        engine.start()
        engine.stop()

        assert engine.engine_state is EngineState.STOPPED
        assert exchange.stream_stopped == 1
        assert store.state_file.exists()
        assert listener.names()[-1] == "stopped"
        assert engine._timer is None

    def test_stop_is_safe_in_any_state(self, engine, listener):
        engine.stop()
        assert engine.engine_state is EngineState.IDLE
        engine.start()
        engine.stop()
        engine.stop()
        assert listener.names().count("stopped") == 1

    def test_startup_failure_reports_and_raises(self, engine, exchange, listener):
        exchange.init_error = NetworkError("exchange unreachable")

        with pytest.raises(NetworkError):
            engine.start()

        assert engine.engine_state is EngineState.STOPPED
        assert listener.names() == ["error"]
        assert exchange.stream_started == 0

    def test_corrupt_state_aborts_start(self, engine, store, listener):
        store.state_file.parent.mkdir(parents=True, exist_ok=True)
        store.state_file.write_text("garbage")

        with pytest.raises(StateLoadError):
            engine.start()
        assert engine.engine_state is EngineState.STOPPED

    def test_can_restart_after_stop(self, engine, exchange):
        engine.start()
        engine.stop()
        engine.start()
        assert engine.engine_state is EngineState.RUNNING
        assert exchange.stream_started == 2

    def test_persisted_risk_state_survives_restart(self, engine, store, risk):
        store.update_risk_state({"daily_loss_count": 2, "last_loss_date": "2024-05-01", "initial_balance": 2000.0})
        engine.start()
        assert risk.daily_loss_count == 2
        assert risk.initial_balance == 2000.0


class TestTicks:
    def test_ticks_ignored_before_running(self, engine, exchange):
        engine.on_price(100.0)
        assert exchange.requests == []

    def test_entry_on_level_hit(self, engine, exchange, store, listener):
        engine.start()
        exchange.on_price(100.0)

        position = store.get_position()
        assert position is not None
        assert position.side is Side.LONG
        assert position.take_profit == 102.0
        assert "opened" in listener.names()

    def test_exit_on_stop_loss(self, engine, exchange, store, risk, listener):
        engine.start()
        store.set_position(make_position())
        exchange.price = 99.8
        exchange.order_failures = [NetworkError("x")] * 3
        exchange.fill_price = 99.8

        engine.on_price(99.8)

        assert store.get_position() is None
        closed = [e[1] for e in listener.events if e[0] == "closed"][0]
        assert closed.reason is CloseReason.STOP_LOSS
        assert closed.is_loss
        assert store.current_stake_percentage == 3.0
        assert risk.daily_loss_count == 1
        assert store.get_risk_state()["daily_loss_count"] == 1

    def test_win_keeps_stake_at_ceiling(self, engine, exchange, store):
        engine.start()
        store.set_position(make_position())
        exchange.price = 102.5

        engine.on_price(102.5)

        assert store.get_position() is None
        assert store.current_stake_percentage == 6.0

    def test_trailing_stop_update(self, engine, store, listener):
        engine.start()
        store.set_position(make_position())

        engine.on_price(101.0)

        new_stop = store.get_position().stop_loss
        assert new_stop == pytest.approx(100.8384)
        assert ("stop", new_stop) in listener.events

    def test_no_stop_event_when_unchanged(self, engine, store, listener):
        engine.start()
        store.set_position(make_position())
        engine.on_price(99.9)
        assert "stop" not in listener.names()

    def test_risk_gate_blocks_entry(self, engine, exchange, risk):
        engine.start()
        for _ in range(3):
            risk.record_loss()
        exchange.on_price(100.0)
        assert exchange.requests == []

    def test_drawdown_blocks_entry(self, engine, exchange, store, risk):
        engine.start()
        store.update_account_balance(800.0)
        exchange.on_price(100.0)
        assert exchange.requests == []

    def test_entry_failure_is_reported_not_raised(self, engine, exchange, store, listener):
        engine.start()
        exchange.order_failures = [InsufficientFunds("no margin")]

        exchange.on_price(100.0)

        assert store.get_position() is None
        assert isinstance(listener.errors()[0], InsufficientFunds)
        assert engine.engine_state is EngineState.RUNNING

    def test_concurrent_entry_is_dropped(self, engine, exchange, store):
        engine.start()
        in_flight = threading.Event()
        release = threading.Event()

        def block(_request):
            in_flight.set()
            release.wait(5)

        exchange.order_hook = block
        first = threading.Thread(target=engine.on_price, args=(100.0,))
        first.start()
        assert in_flight.wait(5)

        engine.on_price(100.01)
        release.set()
        first.join(5)

        assert len(exchange.requests) == 1
        assert store.get_position() is not None

    def test_concurrent_close_is_dropped(self, engine, exchange, store):
        engine.start()
        store.set_position(make_position())
        in_flight = threading.Event()
        release = threading.Event()

        def block(_request):
            in_flight.set()
            release.wait(5)

        exchange.order_hook = block
        first = threading.Thread(target=engine.close_position_manually)
        first.start()
        assert in_flight.wait(5)

        assert engine.close_position_manually() is None
        release.set()
        first.join(5)

        assert len(exchange.requests) == 1
        assert store.get_position() is None

    def test_balance_refresh_failure_after_close_is_reported(self, engine, exchange, store, listener):
        engine.start()
        store.set_position(make_position())
        exchange.balance_error = NetworkError("balance down")

        result = engine.close_position_manually()

        assert result.reason is CloseReason.MANUAL
        assert store.get_position() is None
        assert isinstance(listener.errors()[-1], NetworkError)

    def test_manual_close_without_position(self, engine):
        engine.start()
        assert engine.close_position_manually() is None


class TestLevelsAndErrors:
    def test_refresh_failure_keeps_last_snapshot(self, engine, analyzer, store, listener):
        engine.start()
        good = store.get_levels()
        analyzer.results = [RuntimeError("klines unavailable")]

        assert engine.refresh_levels() is False
        assert store.get_levels() is good
        assert isinstance(listener.errors()[0], RuntimeError)
        assert engine.engine_state is EngineState.RUNNING

    def test_refresh_replaces_snapshot(self, engine, analyzer, store):
        engine.start()
        fresh = make_levels(supports=[90.0])
        analyzer.results = [fresh]
        assert engine.refresh_levels() is True
        assert store.get_levels() is fresh

    def test_stream_errors_are_reported(self, engine, exchange, listener):
        engine.start()
        exchange.on_error(StreamError("maximum reconnection attempts reached"))
        assert isinstance(listener.errors()[0], StreamError)

    def test_failing_listener_does_not_break_engine(self, engine, exchange, store):
        class Broken(EngineListener):
            def on_position_opened(self, position):
                raise RuntimeError("listener bug")

        engine.add_listener(Broken())
        engine.start()
        exchange.on_price(100.0)
        assert store.get_position() is not None

    def test_tick_handler_errors_are_reported(self, engine, store, listener, monkeypatch):
        engine.start()

        def explode():
            raise RuntimeError("boom")

        monkeypatch.setattr(store, "get_position", explode)
        engine.on_price(100.0)
        assert str(listener.errors()[0]) == "boom"


class TestCloseBookkeeping:
    def test_persistence_failure_keeps_close_accounting(self, engine, exchange, store, risk,
                                                       listener, state_path, monkeypatch):
        engine.start()
        store.set_position(make_position())
        exchange.price = 99.5

        def disk_full():
            raise OSError("disk full")

        monkeypatch.setattr(store, "save", disk_full)
        engine.on_price(99.5)

        closed = [e[1] for e in listener.events if e[0] == "closed"]
        assert len(closed) == 1 and closed[0].is_loss
        assert risk.daily_loss_count == 1
        assert store.get_position() is None
        assert store.current_stake_percentage == 3.0
        assert store.get_risk_state()["daily_loss_count"] == 1
        assert listener.errors() and all(isinstance(e, OSError) for e in listener.errors())
        assert engine.engine_state is EngineState.RUNNING

        monkeypatch.undo()
        store.save()
        reloaded = StateStore(str(state_path))
        reloaded.load()
        assert reloaded.get_position() is None
        assert reloaded.current_stake_percentage == 3.0

    def test_stop_event_skipped_when_position_vanishes(self, engine, store, listener, monkeypatch):
        engine.start()
        store.set_position(make_position())
        update = engine.positions.update_stop_loss

        def closed_underneath(new_stop):
            store.clear_position()
            return update(new_stop)

        monkeypatch.setattr(engine.positions, "update_stop_loss", closed_underneath)
        engine.on_price(101.0)

        assert "stop" not in listener.names()
        assert store.get_position() is None


@pytest.fixture
def fast_engine(exchange, analyzer, store, risk, listener):
    controller = PositionController(exchange, store, SYMBOL, TRADING, sleep=lambda _s: None)
    engine = Engine(exchange, analyzer, store, risk, controller, SYMBOL,
                    config={"level_refresh_seconds": 0.01})
    engine.add_listener(listener)
    yield engine
    engine.stop()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRefreshTimer:
    def test_timer_refreshes_until_stopped(self, fast_engine, analyzer):
        fast_engine.start()
        timer = fast_engine._timer

        assert wait_for(lambda: analyzer.calls >= 3)
        fast_engine.stop()
        calls = analyzer.calls
        time.sleep(0.1)

        assert analyzer.calls == calls
        assert not timer.is_alive()

    def test_restart_uses_fresh_stop_signal(self, fast_engine, analyzer):
        fast_engine.start()
        first_event, first_timer = fast_engine._stop_event, fast_engine._timer
        fast_engine.stop()
        fast_engine.start()

        assert first_event.is_set()
        assert fast_engine._stop_event is not first_event
        assert not fast_engine._stop_event.is_set()
        assert not first_timer.is_alive()
        assert fast_engine._timer.is_alive()

        calls = analyzer.calls
        assert wait_for(lambda: analyzer.calls > calls)
