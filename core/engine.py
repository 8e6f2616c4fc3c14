"""
levelbounce Core: Trading Engine

Top-level state machine for one symbol:

    IDLE -> INITIALIZING -> RUNNING -> STOPPING -> STOPPED
                 |                                   ^
                 +----------- (startup failure) -----+

Two event sources drive it: price ticks from the exchange stream (one
dispatcher thread) and the level-refresh timer (one owned thread). Entry
and close each sit behind a non-blocking guard, so a tick that arrives
while an order round trip is in flight is dropped for that purpose rather
than queued.

Errors inside tick handling, level refresh and order placement are logged
and reported to listeners; only start()/stop() failures reach the caller.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from core.events import EngineListener, EngineState
from core.exceptions import DuplicateSignalError, ExchangeError
from core.exchange import Exchange, split_symbol
from core.levels import LevelAnalyzer
from core.models import CloseReason, LevelAnalysis, Position, TradeResult
from core.position_controller import PositionController
from core.risk import RiskGate
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class Engine:
    """
    Config keys (the `trading` section):
        level_refresh_seconds: level snapshot refresh interval (default 300)
    and (the `risk` section):
        enforce_drawdown: block entries once drawdown exceeds the limit (default True)
    """

    def __init__(
        self,
        exchange: Exchange,
        level_analyzer: LevelAnalyzer,
        state_store: StateStore,
        risk_gate: RiskGate,
        position_controller: PositionController,
        symbol: str,
        config: Optional[Dict[str, Any]] = None,
        metrics=None,
    ):
        config = config or {}
        self.exchange = exchange
        self.level_analyzer = level_analyzer
        self.state = state_store
        self.risk = risk_gate
        self.positions = position_controller
        self.symbol = symbol
        self.quote_asset = split_symbol(symbol)[1]
        self.metrics = metrics

        self.level_refresh_seconds = float(config.get("level_refresh_seconds", 300))
        self.enforce_drawdown = bool(config.get("enforce_drawdown", True))

        self._state = EngineState.IDLE
        self._lifecycle_lock = threading.Lock()
        self._entry_guard = threading.Lock()
        self._close_guard = threading.Lock()
        self._refresh_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._listeners: List[EngineListener] = []

    @property
    def engine_state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    def add_listener(self, listener: EngineListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EngineListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: EngineState) -> None:
        logger.info(f"Engine {self._state.value} -> {state.value}")
        self._state = state

    # ----- lifecycle -----

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._state not in (EngineState.IDLE, EngineState.STOPPED):
                logger.warning(f"start() ignored in state {self._state.value}")
                return
            self._set_state(EngineState.INITIALIZING)
            try:
                self.exchange.initialize()
                self.state.load()
                balance = self.refresh_balance()
                self._init_risk(balance)
                self._apply_levels(self.level_analyzer.analyze_levels(self.symbol))
                self._stop_event = threading.Event()
                self.exchange.start_price_stream(self.symbol, self.on_price, self._on_stream_error)
                self._start_timer()
                self._set_state(EngineState.RUNNING)
            except Exception as e:
                logger.error(f"Engine startup failed: {e}", exc_info=True)
                self._report_error(e)
                self._teardown(quiet=True)
                self._set_state(EngineState.STOPPED)
                raise

        logger.info(f"Engine running for {self.symbol}")
        self._notify("on_started")

    def stop(self) -> None:
        with self._lifecycle_lock:
            if self._state not in (EngineState.RUNNING, EngineState.INITIALIZING):
                logger.debug(f"stop() is a no-op in state {self._state.value}")
                return
            self._set_state(EngineState.STOPPING)
            try:
                self._teardown()
                self.state.save()
            except Exception as e:
                logger.error(f"Engine shutdown failed: {e}", exc_info=True)
                self._report_error(e)
                raise
            finally:
                self._set_state(EngineState.STOPPED)

        logger.info("Engine stopped")
        self._notify("on_stopped")

    def _teardown(self, quiet: bool = False) -> None:
        self._stop_event.set()
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=5.0)
        self._timer = None
        try:
            self.exchange.stop_price_stream()
        except Exception as e:
            if not quiet:
                raise
            logger.warning(f"Stream teardown failed during startup rollback: {e}")

    def _init_risk(self, balance: Optional[float]) -> None:
        self.risk.restore(self.state.get_risk_state())
        if self.risk.initial_balance is None and balance:
            self.risk.initialize_baseline(balance)
        self._persist_risk()

    def _persist_risk(self) -> None:
        self.state.update_risk_state(self.risk.snapshot().to_dict())

    def refresh_balance(self) -> float:
        balance = self.exchange.fetch_balance()
        total = float(balance.total.get(self.quote_asset, 0.0))
        self.state.update_account_balance(total)
        logger.info(f"Account balance: {total} {self.quote_asset}")
        return total

    # ----- level refresh timer -----

    def _start_timer(self) -> None:
        self._timer = threading.Thread(
            target=self._refresh_loop, args=(self._stop_event,), name="level-refresh", daemon=True
        )
        self._timer.start()

    def _refresh_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.level_refresh_seconds):
            if self._state is EngineState.RUNNING and not stop_event.is_set():
                self.refresh_levels()

    def refresh_levels(self) -> bool:
        """Replace the level snapshot; on failure the last good snapshot stays in place."""
        if not self._refresh_guard.acquire(blocking=False):
            return False
        try:
            levels = self.level_analyzer.analyze_levels(self.symbol)
            self._apply_levels(levels)
            return True
        except Exception as e:
            logger.error(f"Level refresh failed, keeping last snapshot: {e}", exc_info=True)
            self._report_error(e)
            return False
        finally:
            self._refresh_guard.release()

    def _apply_levels(self, levels: LevelAnalysis) -> None:
        self.state.update_levels(levels)
        self._notify("on_level_update", levels)

    # ----- ticks -----

    def on_price(self, price: float) -> None:
        if self._state is not EngineState.RUNNING:
            return
        if self.metrics:
            self.metrics.record_tick()
        try:
            position = self.state.get_position()
            if position is not None:
                self._manage_position(position, price)
            else:
                self._try_entry(price)
        except Exception as e:
            logger.error(f"Tick handling failed at {price}: {e}", exc_info=True)
            self._report_error(e)

    def _manage_position(self, position: Position, price: float) -> None:
        decision = self.positions.check_exit_conditions(position, price)
        if decision.should_close:
            self._close(decision.reason)
            return
        new_stop = self.positions.calculate_trailing_stop(position, price)
        if new_stop != position.stop_loss:
            if self.positions.update_stop_loss(new_stop) is not None:
                self._notify("on_stop_loss_updated", new_stop)

    def _try_entry(self, price: float) -> None:
        if not self._entry_guard.acquire(blocking=False):
            logger.debug(f"Entry in flight; tick {price} dropped for entry")
            return
        try:
            if self.state.get_position() is not None:
                return
            if not self.risk.can_open_position():
                return
            if self.enforce_drawdown and not self.risk.check_drawdown(self.state.account_balance):
                return
            signal = self.positions.check_entry_conditions(price, self.state.get_levels())
            if signal is None:
                return
            try:
                position = self.positions.open_position(signal)
            except DuplicateSignalError as e:
                logger.warning(str(e))
                self._report_error(e)
                return
            self.state.set_position(position)
            self._notify("on_position_opened", position)
        finally:
            self._entry_guard.release()

    # ----- closing -----

    def close_position_manually(self) -> Optional[TradeResult]:
        """Flatten the open position now. Returns None if nothing is open or a close is in flight."""
        return self._close(CloseReason.MANUAL)

    def _close(self, reason: CloseReason) -> Optional[TradeResult]:
        if not self._close_guard.acquire(blocking=False):
            logger.debug("Close already in flight; ignoring")
            return None
        try:
            position = self.state.get_position()
            if position is None:
                return None
            result = self.positions.close_position(position, reason)
            if result.is_loss:
                self.risk.record_loss()
            self._persist_close(result)
            self._notify("on_position_closed", result)
            try:
                self.refresh_balance()
            except (ExchangeError, OSError) as e:
                logger.error(f"Balance refresh after close failed: {e}")
                self._report_error(e)
            return result
        finally:
            self._close_guard.release()

    def _persist_close(self, result: TradeResult) -> None:
        # In-memory state is updated before each save; a failed write is retried by the next save.
        steps = (
            ("clear position", self.state.clear_position),
            ("adjust stake", lambda: self.state.adjust_stake_percentage(result.outcome)),
            ("persist risk state", self._persist_risk),
        )
        for name, step in steps:
            try:
                step()
            except OSError as e:
                logger.error(f"Failed to {name} after closing {self.symbol}: {e}", exc_info=True)
                self._report_error(e)

    # ----- reporting -----

    def _on_stream_error(self, error: Exception) -> None:
        logger.error(f"Price stream error: {error}")
        self._report_error(error)

    def _report_error(self, error: Exception) -> None:
        self._notify("on_error", error)

    def _notify(self, event: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception:
                logger.exception(f"Listener {type(listener).__name__}.{event} failed")
