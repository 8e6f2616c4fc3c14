"""
levelbounce Core: Exchange Connector (Binance USD-M Futures)

REST over requests with HMAC-SHA256 signing, market filters for amount
rounding, per-symbol leverage, and the public trade stream for ticks.
Every failure surfaces as a typed ExchangeError.
"""

import hashlib
import hmac
import json
import logging
import os
import time
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

from core.exceptions import (
    ExchangeError,
    InsufficientFunds,
    InvalidOrder,
    NetworkError,
    RateLimited,
)
from core.exchange import (
    Balance,
    Candle,
    ErrorCallback,
    Exchange,
    Order,
    OrderRequest,
    PriceCallback,
    Ticker,
)
from core.models import OrderSide, OrderType, fixed_number
from infra.backoff import BackoffPolicy, retry_call
from infra.price_stream import PriceStream

logger = logging.getLogger(__name__)

FAPI_BASE = "https://fapi.binance.com"
FAPI_TESTNET_BASE = "https://testnet.binancefuture.com"
WS_BASE = "wss://fstream.binance.com/ws"
WS_TESTNET_BASE = "wss://stream.binancefuture.com/ws"

RATE_LIMIT_CODES = {-1003, -1015}
INSUFFICIENT_FUNDS_CODES = {-2018, -2019, -2024}
INVALID_ORDER_CODES = {
    -1013, -1100, -1102, -1106, -1111, -1116, -1117,
    -2010, -2021, -2022, -4003, -4061, -4164,
}


def parse_trade_message(raw: str) -> Optional[float]:
    """Extract the trade price from a raw or combined-stream trade event."""
    data = json.loads(raw)
    if isinstance(data, dict) and "stream" in data and "data" in data:
        data = data["data"]
    if not isinstance(data, dict) or data.get("e") != "trade":
        return None
    return fixed_number(float(data["p"]))


def _fmt(value: Decimal) -> str:
    text = format(value.normalize(), "f")
    return text if text not in ("-0", "") else "0"


class BinanceFuturesExchange(Exchange):
    """
    Binance USD-M Futures connector.

    Reads are retried on rate limits, 5xx and network errors with capped
    exponential backoff. Order placement is sent exactly once; callers own
    any retry policy for orders.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        testnet: bool = False,
        timeout: float = 10.0,
        recv_window: int = 5000,
        retry_policy: Optional[BackoffPolicy] = None,
        stream_config: Optional[Dict[str, Any]] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key or os.getenv("BINANCE_API_KEY", "")
        self.api_secret = api_secret or os.getenv("BINANCE_API_SECRET", "")
        self.testnet = testnet
        self.base_url = FAPI_TESTNET_BASE if testnet else FAPI_BASE
        self.ws_base = WS_TESTNET_BASE if testnet else WS_BASE
        self.timeout = float(timeout)
        self.recv_window = int(recv_window)
        self.retry_policy = retry_policy or BackoffPolicy(base_delay=1.0, max_delay=8.0, max_attempts=3, jitter=True)

        stream_config = stream_config or {}
        self.stream_policy = BackoffPolicy.from_config(stream_config)
        self.ping_interval = float(stream_config.get("ping_interval_seconds", 30.0))

        self.session = session or requests.Session()
        if self.api_key:
            self.session.headers.update({"X-MBX-APIKEY": self.api_key})
        self._sleep = sleep

        self._markets: Dict[str, Dict[str, Decimal]] = {}
        self._leverage: Dict[str, int] = {}
        self._stream: Optional[PriceStream] = None

        logger.info(f"Initialized BinanceFuturesExchange (testnet={testnet})")

    @staticmethod
    def market_id(symbol: str) -> str:
        """'BTC/USDT' or 'BTC/USDT:USDT' -> 'BTCUSDT'"""
        return symbol.split(":", 1)[0].replace("/", "").upper()

    # ----- transport -----

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_secret:
            raise ExchangeError("BINANCE_API_SECRET required for signed requests")
        signed = dict(params)
        signed.setdefault("recvWindow", self.recv_window)
        signed["timestamp"] = int(time.time() * 1000)
        query = urlencode(signed, doseq=True)
        signed["signature"] = hmac.new(
            self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return signed

    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             *, signed: bool = False, retry: bool = True) -> Any:
        def _once() -> Any:
            return self._send(method, path, params, signed)

        if not retry:
            return _once()
        return retry_call(
            _once,
            self.retry_policy,
            (NetworkError, RateLimited),
            description=f"{method} {path}",
            sleep=self._sleep,
        )

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]], signed: bool) -> Any:
        query = dict(params or {})
        if signed:
            query = self._sign(query)
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, params=query, timeout=self.timeout)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise NetworkError(f"Network error on {method} {path}: {e}", original=e)
        except requests.exceptions.RequestException as e:
            raise ExchangeError(f"Request failed on {method} {path}: {e}", original=e)

        if response.status_code >= 400:
            raise self._map_error(response, method, path)

        try:
            return response.json()
        except ValueError as e:
            raise ExchangeError(f"Invalid JSON from {method} {path}", original=e)

    @staticmethod
    def _map_error(response, method: str, path: str) -> ExchangeError:
        status = response.status_code
        code = None
        msg = getattr(response, "text", "")
        try:
            body = response.json()
            if isinstance(body, dict):
                code = body.get("code")
                msg = body.get("msg", msg)
        except ValueError:
            pass

        text = f"Binance {status} on {method} {path}: code={code} msg={msg}"
        if status in (418, 429) or code in RATE_LIMIT_CODES:
            logger.warning(text)
            return RateLimited(text)
        if status >= 500:
            logger.warning(text)
            return NetworkError(text)
        logger.error(text)
        if code in INSUFFICIENT_FUNDS_CODES:
            return InsufficientFunds(text)
        if code in INVALID_ORDER_CODES:
            return InvalidOrder(text)
        return ExchangeError(text)

    # ----- markets -----

    def initialize(self) -> None:
        info = self._req("GET", "/fapi/v1/exchangeInfo")
        markets: Dict[str, Dict[str, Decimal]] = {}
        for entry in info.get("symbols", []):
            filters = {f.get("filterType"): f for f in entry.get("filters", [])}
            lot = filters.get("LOT_SIZE", {})
            price_filter = filters.get("PRICE_FILTER", {})
            try:
                markets[entry["symbol"]] = {
                    "min_qty": Decimal(str(lot.get("minQty", "0"))),
                    "step_size": Decimal(str(lot.get("stepSize", "0"))),
                    "tick_size": Decimal(str(price_filter.get("tickSize", "0"))),
                }
            except (InvalidOperation, KeyError) as e:
                logger.debug(f"Skipping market with malformed filters: {entry.get('symbol')} ({e})")
        self._markets = markets
        logger.info(f"Loaded {len(markets)} Binance futures markets")

    def _market(self, symbol: str) -> Dict[str, Decimal]:
        if not self._markets:
            raise ExchangeError("Markets not loaded; call initialize() first")
        market = self._markets.get(self.market_id(symbol))
        if market is None:
            raise InvalidOrder(f"Unknown futures symbol {symbol}")
        return market

    def get_min_amount(self, symbol: str) -> float:
        return float(self._market(symbol)["min_qty"])

    def amount_to_precision(self, symbol: str, amount: float) -> float:
        step = self._market(symbol)["step_size"]
        value = Decimal(str(amount))
        if step > 0:
            value = (value / step).to_integral_value(rounding=ROUND_DOWN) * step
        return float(value)

    def price_to_precision(self, symbol: str, price: float) -> float:
        tick = self._market(symbol)["tick_size"]
        value = Decimal(str(price))
        if tick > 0:
            value = (value / tick).to_integral_value(rounding=ROUND_DOWN) * tick
        return float(value)

    # ----- market data -----

    def fetch_ticker(self, symbol: str) -> Ticker:
        data = self._req("GET", "/fapi/v1/ticker/price", {"symbol": self.market_id(symbol)})
        ts = data.get("time")
        return Ticker(
            symbol=symbol,
            last=float(data["price"]),
            timestamp=datetime.fromtimestamp(ts / 1000, tz=timezone.utc) if ts else None,
        )

    def fetch_ohlcv(self, symbol: str, timeframe: str, since: Optional[int] = None,
                    limit: Optional[int] = None) -> List[Candle]:
        params: Dict[str, Any] = {"symbol": self.market_id(symbol), "interval": timeframe}
        if since is not None:
            params["startTime"] = int(since)
        if limit is not None:
            params["limit"] = min(int(limit), 1500)
        rows = self._req("GET", "/fapi/v1/klines", params)
        return [
            Candle(
                timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
            for row in rows
        ]

    # ----- account / orders -----

    def fetch_balance(self) -> Balance:
        rows = self._req("GET", "/fapi/v2/balance", signed=True)
        balance = Balance()
        for row in rows:
            asset = row.get("asset")
            if not asset:
                continue
            total = float(row.get("balance", 0.0))
            free = float(row.get("availableBalance", total))
            balance.total[asset] = total
            balance.free[asset] = free
            balance.used[asset] = max(total - free, 0.0)
        return balance

    def _ensure_leverage(self, symbol: str, leverage: int) -> None:
        market_id = self.market_id(symbol)
        if self._leverage.get(market_id) == leverage:
            return
        self._req("POST", "/fapi/v1/leverage", {"symbol": market_id, "leverage": int(leverage)}, signed=True)
        self._leverage[market_id] = leverage
        logger.info(f"Leverage for {market_id} set to {leverage}x")

    def create_order(self, request: OrderRequest) -> Order:
        market_id = self.market_id(request.symbol)
        if request.leverage:
            self._ensure_leverage(request.symbol, request.leverage)

        amount = Decimal(str(self.amount_to_precision(request.symbol, request.amount)))
        if amount <= 0:
            raise InvalidOrder(f"Order amount rounds to zero for {request.symbol}: {request.amount}")

        params: Dict[str, Any] = {
            "symbol": market_id,
            "side": request.side.value,
            "type": request.type.value,
            "quantity": _fmt(amount),
            "newOrderRespType": "RESULT",
        }
        if request.type is OrderType.LIMIT:
            if not request.price or request.price <= 0:
                raise InvalidOrder(f"LIMIT order for {request.symbol} requires a positive price")
            params["price"] = _fmt(Decimal(str(self.price_to_precision(request.symbol, request.price))))
            params["timeInForce"] = "GTC"
        if request.reduce_only:
            params["reduceOnly"] = "true"

        logger.warning(
            f"PLACING {request.type.value} ORDER: {request.side.value} {params['quantity']} {market_id}"
            f"{' @ ' + params['price'] if 'price' in params else ''}"
            f"{' (reduce-only)' if request.reduce_only else ''}"
        )
        data = self._req("POST", "/fapi/v1/order", params, signed=True, retry=False)
        try:
            order = self._parse_order(data, request.symbol)
        except (AttributeError, TypeError, ValueError) as e:
            raise ExchangeError(f"Malformed order response for {market_id}: {data}", original=e) from e
        if order is None:
            raise ExchangeError(f"Unexpected order response for {market_id}: {data}")
        return order

    def fetch_open_orders(self, symbol: str) -> List[Order]:
        rows = self._req("GET", "/fapi/v1/openOrders", {"symbol": self.market_id(symbol)}, signed=True)
        orders = []
        for row in rows:
            order = self._parse_order(row, symbol)
            if order is not None:
                orders.append(order)
        return orders

    @staticmethod
    def _parse_order(data: Dict[str, Any], symbol: str) -> Optional[Order]:
        try:
            order_type = OrderType(data.get("type"))
            side = OrderSide(data.get("side"))
        except ValueError:
            logger.debug(f"Ignoring order of unsupported type/side: {data.get('type')}/{data.get('side')}")
            return None

        avg_price = float(data.get("avgPrice") or 0.0)
        limit_price = float(data.get("price") or 0.0)
        executed = float(data.get("executedQty") or 0.0)
        original = float(data.get("origQty") or 0.0)
        return Order(
            id=str(data.get("orderId", "")),
            price=avg_price if avg_price > 0 else limit_price,
            amount=executed if executed > 0 else original,
            symbol=symbol,
            type=order_type,
            side=side,
            status=data.get("status", "NEW"),
        )

    # ----- streaming -----

    def start_price_stream(self, symbol: str, on_price: PriceCallback,
                           on_error: Optional[ErrorCallback] = None) -> None:
        if self._stream is not None and self._stream.is_running():
            logger.warning("Price stream already running; restarting")
            self.stop_price_stream()
        market_id = self.market_id(symbol).lower()
        self._stream = PriceStream(
            url=f"{self.ws_base}/{market_id}@trade",
            parse_message=parse_trade_message,
            on_price=on_price,
            on_error=on_error,
            backoff_policy=self.stream_policy,
            ping_interval=self.ping_interval,
            name=f"binance-{market_id}",
        )
        self._stream.start()

    def stop_price_stream(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream = None
