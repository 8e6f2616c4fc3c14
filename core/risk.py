"""
levelbounce Core: Risk Gate

Hard limits on new entries: a daily loss counter that rolls over at the
calendar day boundary, and a drawdown ceiling measured against a
recorded balance baseline. Rejections are plain False results, never errors.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from core.models import RiskState

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RiskGate:
    """
    Gate for opening positions.

    Config keys (the `risk` section):
        max_daily_losses: losses per calendar day before entries stop (default 3)
        max_drawdown: fractional decline from baseline tolerated (default 0.15)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        config = config or {}
        self.max_daily_losses = int(config.get("max_daily_losses", 3))
        self.max_drawdown = float(config.get("max_drawdown", 0.15))
        self._clock = clock or _utc_now

        self.daily_loss_count = 0
        self.last_loss_date: Optional[str] = None
        self.initial_balance: Optional[float] = None

        logger.info(
            f"Initialized RiskGate: max_daily_losses={self.max_daily_losses}, "
            f"max_drawdown={self.max_drawdown:.1%}"
        )

    def _today(self) -> str:
        return self._clock().date().isoformat()

    def _roll_day(self) -> None:
        if self.last_loss_date != self._today() and self.daily_loss_count:
            logger.info(f"New trading day, resetting daily loss count (was {self.daily_loss_count})")
            self.daily_loss_count = 0

    def can_open_position(self) -> bool:
        self._roll_day()
        if self.daily_loss_count >= self.max_daily_losses:
            logger.debug(
                f"Entry blocked: {self.daily_loss_count} losses today (limit {self.max_daily_losses})"
            )
            return False
        return True

    def record_loss(self) -> None:
        self._roll_day()
        self.daily_loss_count += 1
        self.last_loss_date = self._today()
        logger.warning(f"Loss recorded: {self.daily_loss_count}/{self.max_daily_losses} today")
        if self.daily_loss_count >= self.max_daily_losses:
            logger.warning("Daily loss limit reached, no new entries until next calendar day")

    def initialize_baseline(self, balance: float) -> None:
        self.initial_balance = float(balance)
        logger.info(f"Drawdown baseline set to {self.initial_balance}")

    def check_drawdown(self, current_balance: Optional[float]) -> bool:
        """True while the decline from baseline is within max_drawdown (or no baseline is set)."""
        if not self.initial_balance or self.initial_balance <= 0 or current_balance is None:
            return True
        drawdown = (self.initial_balance - current_balance) / self.initial_balance
        if drawdown > self.max_drawdown:
            logger.warning(
                f"Drawdown {drawdown:.2%} exceeds limit {self.max_drawdown:.2%} "
                f"(baseline={self.initial_balance}, current={current_balance})"
            )
            return False
        return True

    def current_drawdown(self, current_balance: Optional[float]) -> Optional[float]:
        if not self.initial_balance or current_balance is None:
            return None
        return (self.initial_balance - current_balance) / self.initial_balance

    def snapshot(self) -> RiskState:
        return RiskState(
            daily_loss_count=self.daily_loss_count,
            last_loss_date=self.last_loss_date,
            initial_balance=self.initial_balance,
        )

    def restore(self, state: Union[RiskState, Dict[str, Any], None]) -> None:
        if state is None:
            return
        if not isinstance(state, RiskState):
            state = RiskState.from_dict(state)
        self.daily_loss_count = state.daily_loss_count
        self.last_loss_date = state.last_loss_date
        self.initial_balance = state.initial_balance
        self._roll_day()
        logger.info(
            f"Restored risk state: losses_today={self.daily_loss_count} "
            f"baseline={self.initial_balance}"
        )
