"""
levelbounce Infrastructure: State Store

Crash-recoverable persistence of the single TradingState aggregate
(open position, stake %, balance snapshot, level cache, risk counters).
Every mutation rewrites the whole document atomically.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.exceptions import PositionConflictError, StateLoadError
from core.models import LevelAnalysis, Position, TradeOutcome, TradingState

logger = logging.getLogger(__name__)

DEFAULT_STATE_FILE = "state/trading_state.json"


class StateStore:
    """
    Persistent state storage using a JSON file.

    Features:
    - Atomic writes (temp file + fsync + rename)
    - Sorted-key serialization so unchanged state saves byte-identically
    - At most one position held at a time
    - Adaptive stake percentage bounded to [min_pct, max_pct]
    - Thread-safe operations
    """

    def __init__(self, state_file: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or state/trading_state.json)
            config: The `stake` config section (initial_pct, min_pct, max_pct)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", DEFAULT_STATE_FILE))

        config = config or {}
        self.min_stake = float(config.get("min_pct", 1.5))
        self.max_stake = float(config.get("max_pct", 6.0))
        if self.min_stake > self.max_stake:
            raise ValueError(f"stake.min_pct ({self.min_stake}) exceeds stake.max_pct ({self.max_stake})")
        self.initial_stake = self._clamp(float(config.get("initial_pct", self.max_stake)))

        self._lock = threading.RLock()
        self._state = TradingState(current_stake_percentage=self.initial_stake)
        logger.info(f"Initialized StateStore at {self.state_file}")

    def _clamp(self, stake: float) -> float:
        return min(self.max_stake, max(self.min_stake, stake))

    # ----- persistence -----

    def load(self) -> TradingState:
        """
        Load state from file.

        A missing file leaves the defaults in place. Any other read or
        parse failure raises StateLoadError.
        """
        with self._lock:
            if not self.state_file.exists():
                logger.info(f"No state file at {self.state_file}, using defaults")
                self._state = TradingState(current_stake_percentage=self.initial_stake)
                return self._state

            try:
                with open(self.state_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"expected a JSON object, got {type(data).__name__}")
                state = TradingState.from_dict(data, default_stake=self.initial_stake)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.error(f"Failed to load state from {self.state_file}: {e}")
                raise StateLoadError(str(self.state_file), e) from e

            clamped = self._clamp(state.current_stake_percentage)
            if clamped != state.current_stake_percentage:
                logger.warning(
                    f"Persisted stake {state.current_stake_percentage}% outside "
                    f"[{self.min_stake}, {self.max_stake}], clamped to {clamped}%"
                )
                state.current_stake_percentage = clamped

            self._state = state
            logger.info(
                f"Loaded state: position={'yes' if state.current_position else 'none'} "
                f"stake={state.current_stake_percentage}% balance={state.account_balance}"
            )
            return state

    def save(self) -> None:
        """Save state to file atomically. Failures propagate."""
        with self._lock:
            payload = json.dumps(self._state.to_dict(), indent=2, sort_keys=True)
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self.state_file)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            logger.debug("Saved state to file")

    @property
    def state(self) -> TradingState:
        return self._state

    # ----- position -----

    def get_position(self) -> Optional[Position]:
        with self._lock:
            return self._state.current_position

    def set_position(self, position: Position) -> None:
        with self._lock:
            held = self._state.current_position
            if held is not None and held is not position and held.order_id != position.order_id:
                raise PositionConflictError(
                    f"Refusing to replace open position {held.order_id} with {position.order_id}"
                )
            self._state.current_position = position
            self.save()

    def clear_position(self) -> None:
        with self._lock:
            self._state.current_position = None
            self.save()

    # ----- balance / stake -----

    @property
    def account_balance(self) -> Optional[float]:
        return self._state.account_balance

    def update_account_balance(self, balance: float) -> None:
        with self._lock:
            self._state.account_balance = float(balance)
            self.save()

    @property
    def current_stake_percentage(self) -> float:
        return self._state.current_stake_percentage

    def adjust_stake_percentage(self, outcome: TradeOutcome) -> float:
        """WIN doubles the stake up to max_pct; LOSS halves it down to min_pct."""
        with self._lock:
            old = self._state.current_stake_percentage
            if outcome is TradeOutcome.WIN:
                new = min(self.max_stake, old * 2)
            else:
                new = max(self.min_stake, old / 2)
            self._state.current_stake_percentage = new
            self.save()
            logger.info(f"Stake adjusted after {outcome.value}: {old}% -> {new}%")
            return new

    # ----- levels -----

    def get_levels(self) -> Optional[LevelAnalysis]:
        return self._state.last_levels

    def update_levels(self, levels: LevelAnalysis) -> None:
        with self._lock:
            self._state.last_levels = levels
            self._state.last_update = datetime.now(timezone.utc)
            self.save()

    # ----- risk -----

    def get_risk_state(self) -> Optional[Dict[str, Any]]:
        return self._state.risk_state

    def update_risk_state(self, risk_state: Dict[str, Any]) -> None:
        with self._lock:
            self._state.risk_state = dict(risk_state)
            self.save()
