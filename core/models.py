"""
levelbounce Core: Domain Model

Position, level snapshot and signal types shared by the engine,
position controller and state store. Every persisted type round-trips
through plain JSON via to_dict()/from_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

PRECISION = 8

TIMEFRAMES = ("4h", "1h", "15m", "5m")


def fixed_number(value: float) -> float:
    """Round to the precision used for every price, amount and PnL figure."""
    return round(float(value), PRECISION)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_order_side(self) -> "OrderSide":
        return OrderSide.BUY if self is Side.LONG else OrderSide.SELL

    @property
    def exit_order_side(self) -> "OrderSide":
        return OrderSide.SELL if self is Side.LONG else OrderSide.BUY


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class CloseReason(Enum):
    STOP_LOSS = "stopLoss"
    TAKE_PROFIT = "takeProfit"
    MANUAL = "manual"


class TradeOutcome(Enum):
    WIN = "WIN"
    LOSS = "LOSS"


@dataclass
class StopUpdate:
    """Audit record appended whenever a position's stop moves"""
    timestamp: datetime
    old_value: float
    new_value: float
    kind: str = "stop_update"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "type": self.kind,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StopUpdate":
        return cls(
            timestamp=_parse_ts(data["timestamp"]),
            old_value=float(data["old_value"]),
            new_value=float(data["new_value"]),
            kind=data.get("type", "stop_update"),
        )


@dataclass
class Position:
    """
    The single open leveraged position.

    size is the quote-currency notional; contract_amount is the exact base
    quantity sent to the venue and is what every closing order uses.
    """
    side: Side
    entry_price: float
    size: float
    contract_amount: float
    leverage: int
    stop_loss: float
    take_profit: float
    entry_time: datetime
    order_id: Optional[str] = None
    updates: List[StopUpdate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "contract_amount": self.contract_amount,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "entry_time": _iso(self.entry_time),
            "order_id": self.order_id,
            "updates": [u.to_dict() for u in self.updates],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            side=Side(data["side"]),
            entry_price=float(data["entry_price"]),
            size=float(data["size"]),
            contract_amount=float(data["contract_amount"]),
            leverage=int(data["leverage"]),
            stop_loss=float(data["stop_loss"]),
            take_profit=float(data["take_profit"]),
            entry_time=_parse_ts(data["entry_time"]),
            order_id=data.get("order_id"),
            updates=[StopUpdate.from_dict(u) for u in data.get("updates") or []],
        )


@dataclass
class PriceLevel:
    price: float
    time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "time": _iso(self.time)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PriceLevel":
        return cls(price=float(data["price"]), time=_parse_ts(data.get("time")))


def _empty_frames() -> Dict[str, List[PriceLevel]]:
    return {tf: [] for tf in TIMEFRAMES}


@dataclass
class LevelAnalysis:
    """Support ("hold") and resistance levels per timeframe, replaced wholesale on refresh"""
    hold: Dict[str, List[PriceLevel]] = field(default_factory=_empty_frames)
    resistance: Dict[str, List[PriceLevel]] = field(default_factory=_empty_frames)
    timestamp: Optional[datetime] = None

    def supports(self) -> List[PriceLevel]:
        """All support levels in timeframe order, stored order within each."""
        return [lvl for tf in TIMEFRAMES for lvl in self.hold.get(tf, [])]

    def resistances(self) -> List[PriceLevel]:
        return [lvl for tf in TIMEFRAMES for lvl in self.resistance.get(tf, [])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hold": {tf: [l.to_dict() for l in self.hold.get(tf, [])] for tf in TIMEFRAMES},
            "resistance": {tf: [l.to_dict() for l in self.resistance.get(tf, [])] for tf in TIMEFRAMES},
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LevelAnalysis":
        hold = data.get("hold") or {}
        resistance = data.get("resistance") or {}
        return cls(
            hold={tf: [PriceLevel.from_dict(l) for l in hold.get(tf, [])] for tf in TIMEFRAMES},
            resistance={tf: [PriceLevel.from_dict(l) for l in resistance.get(tf, [])] for tf in TIMEFRAMES},
            timestamp=_parse_ts(data.get("timestamp")),
        )


@dataclass
class EntrySignal:
    side: Side
    entry_price: float
    size: float  # quote currency
    target_level: float


@dataclass
class ExitDecision:
    should_close: bool
    reason: Optional[CloseReason] = None


@dataclass
class TradeResult:
    position: Position
    exit_price: float
    pnl: float
    reason: CloseReason
    exit_time: datetime
    is_loss: bool

    @property
    def outcome(self) -> TradeOutcome:
        return TradeOutcome.LOSS if self.is_loss else TradeOutcome.WIN


@dataclass
class TradingState:
    """The persisted aggregate: one document, rewritten in full on every mutation"""
    current_position: Optional[Position] = None
    current_stake_percentage: float = 6.0
    account_balance: Optional[float] = None
    last_levels: Optional[LevelAnalysis] = None
    last_update: Optional[datetime] = None
    risk_state: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_position": self.current_position.to_dict() if self.current_position else None,
            "current_stake_percentage": self.current_stake_percentage,
            "account_balance": self.account_balance,
            "last_levels": self.last_levels.to_dict() if self.last_levels else None,
            "last_update": _iso(self.last_update),
            "risk_state": self.risk_state,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_stake: float = 6.0) -> "TradingState":
        position = data.get("current_position")
        levels = data.get("last_levels")
        balance = data.get("account_balance")
        stake = data.get("current_stake_percentage")
        return cls(
            current_position=Position.from_dict(position) if position else None,
            current_stake_percentage=float(stake) if stake is not None else default_stake,
            account_balance=float(balance) if balance is not None else None,
            last_levels=LevelAnalysis.from_dict(levels) if levels else None,
            last_update=_parse_ts(data.get("last_update")),
            risk_state=data.get("risk_state"),
        )


@dataclass
class RiskState:
    """Daily loss counter and drawdown baseline kept by the RiskGate"""
    daily_loss_count: int = 0
    last_loss_date: Optional[str] = None  # ISO calendar date
    initial_balance: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daily_loss_count": self.daily_loss_count,
            "last_loss_date": self.last_loss_date,
            "initial_balance": self.initial_balance,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RiskState":
        data = data or {}
        initial = data.get("initial_balance")
        return cls(
            daily_loss_count=int(data.get("daily_loss_count", 0) or 0),
            last_loss_date=data.get("last_loss_date"),
            initial_balance=float(initial) if initial is not None else None,
        )
