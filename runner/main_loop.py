"""
levelbounce Runner: Main Loop

Host process for the trading engine.

Flow:
1. Load and validate config/app.yaml
2. Configure logging, take the single-instance lock
3. Wire exchange, state store, level analyzer, risk gate and position
   controller into the Engine, plus logging/metrics/alert listeners
4. Start the engine and block until SIGINT/SIGTERM or a terminal stream failure
5. Stop the engine (final state save) and exit

`--analyze` prints one level snapshot as JSON and exits without trading.
"""

import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.engine import Engine
from core.exchange_binance import BinanceFuturesExchange
from core.levels import SwingLevelAnalyzer
from core.models import LevelAnalysis
from core.position_controller import PositionController
from core.risk import RiskGate
from infra.alerting import AlertService
from infra.backoff import BackoffPolicy
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from runner.listeners import AlertListener, LoggingListener, MetricsListener, ShutdownOnStreamFailure
from tools.config_validator import ConfigError, load_app_config

logger = logging.getLogger(__name__)


def configure_logging(log_cfg: Dict[str, Any]) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = log_cfg.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class TradingBot:
    """Builds the component graph from config and owns the process lifecycle."""

    def __init__(self, config_dir: str = "config", testnet: bool = False,
                 config: Optional[Dict[str, Any]] = None):
        overrides = {"exchange": {"testnet": True}} if testnet else None
        self.config = config if config is not None else load_app_config(config_dir, overrides)
        self.symbol = self.config["trading"]["symbol"]
        self._shutdown = threading.Event()
        self.instance_lock = None
        self.engine: Optional[Engine] = None
        self.exchange = self.build_exchange()

    def build_exchange(self) -> BinanceFuturesExchange:
        ex_cfg = self.config.get("exchange", {})
        return BinanceFuturesExchange(
            api_key=os.getenv(ex_cfg.get("api_key_env", "BINANCE_API_KEY"), ""),
            api_secret=os.getenv(ex_cfg.get("api_secret_env", "BINANCE_API_SECRET"), ""),
            testnet=bool(ex_cfg.get("testnet", False)),
            timeout=float(ex_cfg.get("timeout_seconds", 10.0)),
            retry_policy=BackoffPolicy(base_delay=1.0, max_delay=8.0, max_attempts=3, jitter=True),
            stream_config=ex_cfg.get("stream", {}),
        )

    def build_engine(self, metrics: Optional[MetricsRecorder] = None,
                     alerts: Optional[AlertService] = None) -> Engine:
        trading_cfg = self.config.get("trading", {})
        risk_cfg = self.config.get("risk", {})

        state_store = StateStore(self.config.get("state", {}).get("path"), self.config.get("stake", {}))
        controller = PositionController(self.exchange, state_store, self.symbol, trading_cfg, metrics=metrics)
        engine = Engine(
            exchange=self.exchange,
            level_analyzer=SwingLevelAnalyzer(self.exchange, self.config.get("levels", {})),
            state_store=state_store,
            risk_gate=RiskGate(risk_cfg),
            position_controller=controller,
            symbol=self.symbol,
            config={
                "level_refresh_seconds": trading_cfg.get("level_refresh_seconds", 300),
                "enforce_drawdown": risk_cfg.get("enforce_drawdown", True),
            },
            metrics=metrics,
        )
        engine.add_listener(LoggingListener())
        if metrics is not None:
            engine.add_listener(MetricsListener(metrics, state_store))
        if alerts is not None and alerts.is_enabled():
            engine.add_listener(AlertListener(alerts, self.symbol))
        return engine

    def analyze(self) -> LevelAnalysis:
        self.exchange.initialize()
        return SwingLevelAnalyzer(self.exchange, self.config.get("levels", {})).analyze_levels(self.symbol)

    def _handle_stop(self, signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping bot...")
        self._shutdown.set()

    def request_stop(self) -> None:
        self._shutdown.set()

    def run(self) -> int:
        """Run until a stop signal or a terminal stream failure. Returns the exit status."""
        state_cfg = self.config.get("state", {})
        self.instance_lock = check_single_instance("levelbounce", lock_dir=state_cfg.get("lock_dir", "state"))
        if not self.instance_lock:
            logger.error("Another levelbounce instance holds the lock; refusing to start")
            return 1

        monitoring = self.config.get("monitoring", {})
        metrics = MetricsRecorder(
            enabled=bool(monitoring.get("metrics_enabled", False)),
            port=int(monitoring.get("metrics_port", 9100)),
        )
        metrics.start()
        alerts = AlertService.from_config(monitoring.get("alerts", {}))

        self.engine = self.build_engine(metrics=metrics, alerts=alerts)
        stream_watch = ShutdownOnStreamFailure(self._shutdown)
        self.engine.add_listener(stream_watch)

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        try:
            self.engine.start()
        except Exception as e:
            logger.critical(f"Failed to start trading engine: {e}")
            self.instance_lock.release()
            return 1

        try:
            while not self._shutdown.wait(1.0):
                pass
        finally:
            try:
                self.engine.stop()
            finally:
                self.instance_lock.release()

        return 1 if stream_watch.error is not None else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="levelbounce futures trading bot")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--analyze", action="store_true", help="Print one level snapshot as JSON and exit")
    parser.add_argument("--testnet", action="store_true", help="Force the venue testnet")
    args = parser.parse_args(argv)

    try:
        bot = TradingBot(config_dir=args.config_dir, testnet=args.testnet)
    except ConfigError as e:
        print("\n❌ Configuration Validation Failed:\n")
        for error in e.errors:
            print(f"  • {error}")
        return 1
    configure_logging(bot.config.get("logging", {}))
    logger.info(f"Starting levelbounce for {bot.symbol} (testnet={bot.config['exchange']['testnet']})")

    if args.analyze:
        levels = bot.analyze()
        print(json.dumps(levels.to_dict(), indent=2))
        return 0

    return bot.run()


if __name__ == "__main__":
    sys.exit(main())
