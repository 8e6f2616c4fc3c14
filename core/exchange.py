"""
levelbounce Core: Exchange Contract

The narrow capability interface the trading core depends on. One adapter
per venue implements it; adapters translate every venue failure into a
typed ExchangeError (see core.exceptions).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from core.models import OrderSide, OrderType

PriceCallback = Callable[[float], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class Ticker:
    symbol: str
    last: float
    timestamp: Optional[datetime] = None


@dataclass
class Candle:
    """Candlestick data"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class OrderRequest:
    symbol: str
    type: OrderType
    side: OrderSide
    amount: float
    price: Optional[float] = None
    leverage: Optional[int] = None
    reduce_only: bool = False


@dataclass
class Order:
    """
    Venue acknowledgement of an order.

    price is the average fill price when the venue reports one, otherwise
    the limit price (0.0 if neither is known).
    """
    id: str
    price: float
    amount: float
    symbol: str
    type: OrderType
    side: OrderSide
    status: str = "NEW"


@dataclass
class Balance:
    total: Dict[str, float] = field(default_factory=dict)
    used: Dict[str, float] = field(default_factory=dict)
    free: Dict[str, float] = field(default_factory=dict)


class Exchange(ABC):
    """Capabilities required from a futures venue."""

    @abstractmethod
    def initialize(self) -> None:
        """Load markets/filters; must be called before trading."""

    @abstractmethod
    def fetch_ticker(self, symbol: str) -> Ticker:
        ...

    @abstractmethod
    def fetch_ohlcv(self, symbol: str, timeframe: str, since: Optional[int] = None,
                    limit: Optional[int] = None) -> List[Candle]:
        ...

    @abstractmethod
    def create_order(self, request: OrderRequest) -> Order:
        ...

    @abstractmethod
    def fetch_open_orders(self, symbol: str) -> List[Order]:
        ...

    @abstractmethod
    def fetch_balance(self) -> Balance:
        ...

    @abstractmethod
    def get_min_amount(self, symbol: str) -> float:
        """Smallest base quantity the venue accepts for symbol."""

    @abstractmethod
    def amount_to_precision(self, symbol: str, amount: float) -> float:
        """Round a base quantity down to the venue's step size."""

    @abstractmethod
    def start_price_stream(self, symbol: str, on_price: PriceCallback,
                           on_error: Optional[ErrorCallback] = None) -> None:
        ...

    @abstractmethod
    def stop_price_stream(self) -> None:
        ...


def split_symbol(symbol: str) -> tuple:
    """'BTC/USDT' -> ('BTC', 'USDT')"""
    if "/" in symbol:
        base, quote = symbol.split("/", 1)
        return base, quote.split(":", 1)[0]
    for quote in ("USDT", "USDC", "BUSD", "USD"):
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    raise ValueError(f"Cannot split symbol {symbol!r} into base/quote")
