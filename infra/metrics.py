"""Prometheus-backed metrics hooks for the trading engine and order execution."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from prometheus_client import REGISTRY, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Last-seen values are kept in memory as well so tests and the CLI can
    read them without scraping.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self.ticks = 0
        self.positions_opened = 0
        self.positions_closed: Dict[str, int] = {}
        self.realized_pnl = 0.0
        self.order_attempts: Dict[str, int] = {}
        self.errors: Dict[str, int] = {}
        self._collectors: List = []

        if not self._enabled:
            return

        self._ticks_counter = self._register(Counter(
            "levelbounce_ticks_total",
            "Price ticks handled by the engine",
        ))
        self._opened_counter = self._register(Counter(
            "levelbounce_positions_opened_total",
            "Positions opened, by side",
            labelnames=("side",),
        ))
        self._closed_counter = self._register(Counter(
            "levelbounce_positions_closed_total",
            "Positions closed, by reason and outcome",
            labelnames=("reason", "outcome"),
        ))
        self._pnl_gauge = self._register(Gauge(
            "levelbounce_realized_pnl",
            "Cumulative realized PnL in quote currency since process start",
        ))
        self._stake_gauge = self._register(Gauge(
            "levelbounce_stake_pct",
            "Current stake percentage used to size entries",
        ))
        self._balance_gauge = self._register(Gauge(
            "levelbounce_account_balance",
            "Last fetched account balance in quote currency",
        ))
        self._order_counter = self._register(Counter(
            "levelbounce_order_attempts_total",
            "Order placement attempts, by order type and outcome",
            labelnames=("type", "outcome"),
        ))
        self._error_counter = self._register(Counter(
            "levelbounce_engine_errors_total",
            "Errors reported by the engine, by kind",
            labelnames=("kind",),
        ))

    def _register(self, collector):
        self._collectors.append(collector)
        return collector

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None:
            for collector in getattr(cls._instance, "_collectors", []):
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    logger.debug("Collector already unregistered")
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_tick(self) -> None:
        self.ticks += 1
        if self._enabled:
            self._ticks_counter.inc()

    def record_position_opened(self, side: str) -> None:
        self.positions_opened += 1
        if self._enabled:
            self._opened_counter.labels(side=side).inc()

    def record_position_closed(self, reason: str, outcome: str, pnl: float) -> None:
        self.positions_closed[reason] = self.positions_closed.get(reason, 0) + 1
        self.realized_pnl += pnl
        if self._enabled:
            self._closed_counter.labels(reason=reason, outcome=outcome).inc()
            self._pnl_gauge.set(self.realized_pnl)

    def record_stake(self, stake_pct: float) -> None:
        if self._enabled:
            self._stake_gauge.set(stake_pct)

    def record_balance(self, balance: float) -> None:
        if self._enabled:
            self._balance_gauge.set(balance)

    def record_order_attempt(self, order_type: str, outcome: str) -> None:
        key = f"{order_type}:{outcome}"
        self.order_attempts[key] = self.order_attempts.get(key, 0) + 1
        if self._enabled:
            self._order_counter.labels(type=order_type, outcome=outcome).inc()

    def record_error(self, kind: str) -> None:
        self.errors[kind] = self.errors.get(kind, 0) + 1
        if self._enabled:
            self._error_counter.labels(kind=kind).inc()
