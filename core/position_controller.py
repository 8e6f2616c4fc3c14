"""
levelbounce Core: Position Controller

Entry/exit decisions against the level snapshot, order sizing, and order
execution for the single open position.

Closing escalates: a bounded number of reduce-only LIMIT orders priced
through the market, then reduce-only MARKET orders retried until one is
accepted. An open position is always eventually flattened.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import DuplicateSignalError, ExchangeError
from core.exchange import Exchange, Order, OrderRequest
from core.models import (
    CloseReason,
    EntrySignal,
    ExitDecision,
    LevelAnalysis,
    OrderSide,
    OrderType,
    Position,
    PriceLevel,
    Side,
    StopUpdate,
    TradeResult,
    fixed_number,
)
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


class PositionController:
    """
    Config keys (the `trading` section):
        leverage (20), proximity_threshold (0.001), stop_factor (0.0016),
        trail_factor (0.0016), max_resting_orders_per_side (4),
        close: {limit_attempts (3), limit_offset (0.0005),
                limit_retry_delay_seconds (1.0), market_retry_delay_seconds (1.0)}
    """

    def __init__(
        self,
        exchange: Exchange,
        state_store: StateStore,
        symbol: str,
        config: Optional[Dict[str, Any]] = None,
        metrics=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config = config or {}
        self.exchange = exchange
        self.state = state_store
        self.symbol = symbol
        self.metrics = metrics
        self._sleep = sleep

        self.leverage = int(config.get("leverage", 20))
        self.proximity_threshold = float(config.get("proximity_threshold", 0.001))
        self.stop_factor = float(config.get("stop_factor", 0.0016))
        self.trail_factor = float(config.get("trail_factor", 0.0016))
        self.max_resting_orders = int(config.get("max_resting_orders_per_side", 4))

        close_cfg = config.get("close") or {}
        self.limit_attempts = int(close_cfg.get("limit_attempts", 3))
        self.limit_offset = float(close_cfg.get("limit_offset", 0.0005))
        self.limit_retry_delay = float(close_cfg.get("limit_retry_delay_seconds", 1.0))
        self.market_retry_delay = float(close_cfg.get("market_retry_delay_seconds", 1.0))

        logger.info(
            f"PositionController initialized for {symbol}: leverage={self.leverage}x "
            f"proximity={self.proximity_threshold} stop={self.stop_factor} trail={self.trail_factor}"
        )

    # ----- execution -----

    def open_position(self, signal: EntrySignal) -> Position:
        """
        Place the entry LIMIT order for signal and build the resulting Position.

        Raises DuplicateSignalError when too many entry orders are already
        resting on the same side. Order failures propagate; entries are
        never retried.
        """
        order_side = signal.side.entry_order_side
        resting = self._resting_limit_orders(order_side)
        if resting >= self.max_resting_orders:
            raise DuplicateSignalError(self.symbol, order_side.value, resting)

        ticker = self.exchange.fetch_ticker(self.symbol)
        amount = self.exchange.amount_to_precision(self.symbol, signal.size / ticker.last)
        size = signal.size
        min_amount = self.exchange.get_min_amount(self.symbol)
        if amount < min_amount:
            logger.info(
                f"Order amount {amount} below venue minimum {min_amount}; using minimum"
            )
            amount = min_amount
            size = fixed_number(min_amount * ticker.last)

        logger.info(
            f"Opening {signal.side.value} {self.symbol}: {amount} @ {signal.entry_price} "
            f"(notional {size}, target {signal.target_level})"
        )
        order = self._submit(OrderRequest(
            symbol=self.symbol,
            type=OrderType.LIMIT,
            side=order_side,
            amount=amount,
            price=signal.entry_price,
            leverage=self.leverage,
        ))

        entry_price = fixed_number(order.price or signal.entry_price)
        position = Position(
            side=signal.side,
            entry_price=entry_price,
            size=fixed_number(size),
            contract_amount=amount,
            leverage=self.leverage,
            stop_loss=self.initial_stop(signal.side, entry_price),
            take_profit=fixed_number(signal.target_level),
            entry_time=datetime.now(timezone.utc),
            order_id=order.id,
        )
        logger.warning(
            f"POSITION OPENED: {position.side.value} {position.contract_amount} {self.symbol} "
            f"@ {position.entry_price} SL={position.stop_loss} TP={position.take_profit}"
        )
        return position

    def close_position(self, position: Position, reason: CloseReason) -> TradeResult:
        """Flatten position; returns only once a closing order has been accepted."""
        exit_side = position.side.exit_order_side
        logger.warning(
            f"Closing {position.side.value} {position.contract_amount} {self.symbol} ({reason.value})"
        )

        last_price: Optional[float] = None
        order: Optional[Order] = None

        for attempt in range(1, self.limit_attempts + 1):
            try:
                last_price = self.exchange.fetch_ticker(self.symbol).last
                if exit_side is OrderSide.SELL:
                    limit_price = fixed_number(last_price * (1 - self.limit_offset))
                else:
                    limit_price = fixed_number(last_price * (1 + self.limit_offset))
                order = self._submit(OrderRequest(
                    symbol=self.symbol,
                    type=OrderType.LIMIT,
                    side=exit_side,
                    amount=position.contract_amount,
                    price=limit_price,
                    reduce_only=True,
                ))
                break
            except Exception as e:
                logger.warning(f"LIMIT close attempt {attempt}/{self.limit_attempts} failed: {e}",
                               exc_info=not isinstance(e, ExchangeError))
                if attempt < self.limit_attempts:
                    self._sleep(self.limit_retry_delay)

        if order is None:
            logger.error(f"LIMIT close exhausted for {self.symbol}; falling back to MARKET")
            attempt = 0
            while order is None:
                attempt += 1
                try:
                    order = self._submit(OrderRequest(
                        symbol=self.symbol,
                        type=OrderType.MARKET,
                        side=exit_side,
                        amount=position.contract_amount,
                        reduce_only=True,
                    ))
                except Exception as e:
                    logger.error(f"MARKET close attempt {attempt} failed: {e}; retrying in {self.market_retry_delay}s",
                                 exc_info=not isinstance(e, ExchangeError))
                    self._sleep(self.market_retry_delay)

        exit_price = order.price if order.price and order.price > 0 else self._fallback_price(last_price, position)
        exit_price = fixed_number(exit_price)
        pnl = self.calculate_pnl(position, exit_price)
        result = TradeResult(
            position=position,
            exit_price=exit_price,
            pnl=pnl,
            reason=reason,
            exit_time=datetime.now(timezone.utc),
            is_loss=pnl < 0,
        )
        logger.warning(
            f"POSITION CLOSED: {position.side.value} {self.symbol} @ {exit_price} "
            f"PnL={pnl} ({reason.value})"
        )
        return result

    def _submit(self, request: OrderRequest) -> Order:
        try:
            order = self.exchange.create_order(request)
        except ExchangeError as e:
            if self.metrics:
                self.metrics.record_order_attempt(request.type.value, e.kind.value)
            raise
        if self.metrics:
            self.metrics.record_order_attempt(request.type.value, "accepted")
        return order

    def _resting_limit_orders(self, side: OrderSide) -> int:
        orders = self.exchange.fetch_open_orders(self.symbol)
        return sum(1 for o in orders if o.type is OrderType.LIMIT and o.side is side)

    def _fallback_price(self, last_price: Optional[float], position: Position) -> float:
        try:
            return self.exchange.fetch_ticker(self.symbol).last
        except ExchangeError as e:
            logger.warning(f"No fill price reported and ticker unavailable: {e}")
        return last_price if last_price is not None else position.entry_price

    # ----- decisions -----

    def check_entry_conditions(self, price: float, levels: Optional[LevelAnalysis]) -> Optional[EntrySignal]:
        if levels is None:
            return None

        supports = levels.supports()
        resistances = levels.resistances()

        for level in supports:
            if self._is_level_hit(price, level.price):
                target = self._next_level(price, resistances, up=True)
                if target is not None:
                    return self._entry_signal(Side.LONG, price, target)

        for level in resistances:
            if self._is_level_hit(price, level.price):
                target = self._next_level(price, supports, up=False)
                if target is not None:
                    return self._entry_signal(Side.SHORT, price, target)

        return None

    def check_exit_conditions(self, position: Position, price: float) -> ExitDecision:
        if position.side is Side.LONG:
            if price <= position.stop_loss:
                return ExitDecision(True, CloseReason.STOP_LOSS)
            if price >= position.take_profit:
                return ExitDecision(True, CloseReason.TAKE_PROFIT)
        else:
            if price >= position.stop_loss:
                return ExitDecision(True, CloseReason.STOP_LOSS)
            if price <= position.take_profit:
                return ExitDecision(True, CloseReason.TAKE_PROFIT)
        return ExitDecision(False)

    def calculate_trailing_stop(self, position: Position, price: float) -> float:
        """Candidate stop trailing price; never loosens the current stop."""
        if position.side is Side.LONG:
            return fixed_number(max(price * (1 - self.trail_factor), position.stop_loss))
        return fixed_number(min(price * (1 + self.trail_factor), position.stop_loss))

    def update_stop_loss(self, new_stop: float) -> Optional[Position]:
        position = self.state.get_position()
        if position is None:
            return None
        position.updates.append(StopUpdate(
            timestamp=datetime.now(timezone.utc),
            old_value=position.stop_loss,
            new_value=new_stop,
        ))
        position.stop_loss = new_stop
        self.state.set_position(position)
        logger.info(f"Stop loss updated to: {new_stop}")
        return position

    # ----- helpers -----

    def initial_stop(self, side: Side, entry_price: float) -> float:
        if side is Side.LONG:
            return fixed_number(entry_price * (1 - self.stop_factor))
        return fixed_number(entry_price * (1 + self.stop_factor))

    @staticmethod
    def calculate_pnl(position: Position, exit_price: float) -> float:
        if position.side is Side.LONG:
            return fixed_number((exit_price - position.entry_price) * position.contract_amount)
        return fixed_number((position.entry_price - exit_price) * position.contract_amount)

    def _is_level_hit(self, price: float, level: float) -> bool:
        if level <= 0:
            return False
        return abs(price - level) / level <= self.proximity_threshold

    @staticmethod
    def _next_level(price: float, levels: List[PriceLevel], up: bool) -> Optional[PriceLevel]:
        ordered = sorted(levels, key=lambda lvl: lvl.price)
        if up:
            return next((lvl for lvl in ordered if lvl.price > price), None)
        return next((lvl for lvl in reversed(ordered) if lvl.price < price), None)

    def _entry_signal(self, side: Side, price: float, target: PriceLevel) -> Optional[EntrySignal]:
        size = self.position_size()
        if size <= 0:
            logger.debug("No account balance available; skipping entry signal")
            return None
        return EntrySignal(
            side=side,
            entry_price=fixed_number(price),
            size=size,
            target_level=fixed_number(target.price),
        )

    def position_size(self) -> float:
        balance = self.state.account_balance
        if not balance or balance <= 0:
            return 0.0
        return fixed_number(balance * (self.state.current_stake_percentage / 100))
