"""
levelbounce Runner: Engine Listeners

Bridges engine events to logs, Prometheus metrics and webhook alerts, and
turns a terminal stream failure into a shutdown request for the host.
"""

import logging
import threading
from typing import Optional

from core.events import EngineListener
from core.exceptions import ExchangeError, StreamError
from core.models import LevelAnalysis, Position, TradeResult
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


def error_kind(error: Exception) -> str:
    if isinstance(error, ExchangeError):
        return error.kind.value
    if isinstance(error, StreamError):
        return "stream"
    return type(error).__name__


class LoggingListener(EngineListener):
    def on_started(self) -> None:
        logger.info("Trading engine started")

    def on_stopped(self) -> None:
        logger.info("Trading engine stopped")

    def on_error(self, error: Exception) -> None:
        logger.error(f"Engine error [{error_kind(error)}]: {error}")

    def on_position_opened(self, position: Position) -> None:
        logger.info(
            f"Position opened: {position.side.value} {position.contract_amount} @ {position.entry_price} "
            f"SL={position.stop_loss} TP={position.take_profit} order={position.order_id}"
        )

    def on_position_closed(self, result: TradeResult) -> None:
        logger.info(
            f"Position closed ({result.reason.value}): exit={result.exit_price} "
            f"pnl={result.pnl} outcome={result.outcome.value}"
        )

    def on_level_update(self, levels: LevelAnalysis) -> None:
        logger.info(
            f"Levels updated: {len(levels.supports())} supports, {len(levels.resistances())} resistances"
        )

    def on_stop_loss_updated(self, new_stop: float) -> None:
        logger.debug(f"Trailing stop moved to {new_stop}")


class MetricsListener(EngineListener):
    def __init__(self, metrics: MetricsRecorder, state_store: StateStore):
        self.metrics = metrics
        self.state = state_store

    def on_started(self) -> None:
        self.metrics.record_stake(self.state.current_stake_percentage)
        if self.state.account_balance is not None:
            self.metrics.record_balance(self.state.account_balance)

    def on_error(self, error: Exception) -> None:
        self.metrics.record_error(error_kind(error))

    def on_position_opened(self, position: Position) -> None:
        self.metrics.record_position_opened(position.side.value)

    def on_position_closed(self, result: TradeResult) -> None:
        self.metrics.record_position_closed(result.reason.value, result.outcome.value, result.pnl)
        self.metrics.record_stake(self.state.current_stake_percentage)


class AlertListener(EngineListener):
    def __init__(self, alerts: AlertService, symbol: str):
        self.alerts = alerts
        self.symbol = symbol

    def on_error(self, error: Exception) -> None:
        severity = AlertSeverity.CRITICAL if isinstance(error, StreamError) else AlertSeverity.WARNING
        self.alerts.notify(
            severity,
            f"{self.symbol} engine error",
            str(error),
            {"kind": error_kind(error)},
        )

    def on_position_opened(self, position: Position) -> None:
        self.alerts.notify(
            AlertSeverity.INFO,
            f"{self.symbol} position opened",
            f"{position.side.value} {position.contract_amount} @ {position.entry_price}",
            {"stop_loss": position.stop_loss, "take_profit": position.take_profit},
        )

    def on_position_closed(self, result: TradeResult) -> None:
        self.alerts.notify(
            AlertSeverity.INFO,
            f"{self.symbol} position closed",
            f"{result.reason.value} @ {result.exit_price} pnl={result.pnl}",
            {"outcome": result.outcome.value},
        )


class ShutdownOnStreamFailure(EngineListener):
    """Sets the host's shutdown event once the price stream gives up."""

    def __init__(self, shutdown: threading.Event):
        self.shutdown = shutdown
        self.error: Optional[Exception] = None

    def on_error(self, error: Exception) -> None:
        if isinstance(error, StreamError):
            logger.critical(f"Price stream failed permanently, requesting shutdown: {error}")
            self.error = error
            self.shutdown.set()
