"""
WebSocket price stream with an explicit connection state machine.

    DISCONNECTED -> CONNECTING -> CONNECTED
                        ^             |
                        |   (closed)  v
                        +-------- BACKOFF

The reader thread owns the socket and the reconnect timer. Consecutive
failed connections back off exponentially (capped); once max attempts are
used up the stream stops for good and reports a StreamError. A successful
open resets the counter. websocket-client sends the keepalive ping on a
fixed interval while connected.

Ticks are handed to a separate dispatcher thread through a single
latest-price slot, so a slow handler never stalls the socket reader and
stale intermediate prices are dropped rather than queued.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

import websocket

from core.exceptions import StreamError
from infra.backoff import Backoff, BackoffPolicy

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


class PriceStream:
    def __init__(
        self,
        url: str,
        parse_message: Callable[[str], Optional[float]],
        on_price: Callable[[float], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        *,
        backoff_policy: Optional[BackoffPolicy] = None,
        ping_interval: float = 30.0,
        ping_timeout: float = 10.0,
        name: str = "PriceStream",
    ):
        self.url = url
        self.name = name
        self._parse = parse_message
        self._on_price = on_price
        self._on_error = on_error
        self._backoff = Backoff(backoff_policy or BackoffPolicy())
        self.ping_interval = float(ping_interval)
        self.ping_timeout = min(float(ping_timeout), self.ping_interval / 2) if ping_interval else None

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._ws: Optional[websocket.WebSocketApp] = None
        self._opened = False

        self._latest: Optional[float] = None
        self._slot_lock = threading.Lock()
        self._pending = threading.Event()

        self._reader: Optional[threading.Thread] = None
        self._dispatcher: Optional[threading.Thread] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempts

    def is_running(self) -> bool:
        return self._reader is not None and self._reader.is_alive()

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            if state is self._state:
                return
            logger.debug(f"[{self.name}] {self._state.value} -> {state.value}")
            self._state = state

    def start(self) -> None:
        if self.is_running():
            logger.warning(f"[{self.name}] already running")
            return
        self._stop.clear()
        self._pending.clear()
        self._backoff.reset()
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name=f"{self.name}-dispatch", daemon=True)
        self._reader = threading.Thread(target=self._run, name=f"{self.name}-reader", daemon=True)
        self._dispatcher.start()
        self._reader.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._pending.set()
        ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                logger.debug(f"[{self.name}] close raised: {exc}")
        current = threading.current_thread()
        for thread in (self._reader, self._dispatcher):
            if thread is not None and thread is not current:
                thread.join(timeout)
        self._reader = None
        self._dispatcher = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"[{self.name}] stopped")

    # ----- reader thread -----

    def _run(self) -> None:
        while not self._stop.is_set():
            self._set_state(ConnectionState.CONNECTING)
            self._opened = False
            logger.info(f"[{self.name}] connecting -> {self.url}")
            try:
                self._ws = websocket.WebSocketApp(
                    self.url,
                    on_open=self._handle_open,
                    on_message=self._handle_message,
                    on_error=self._handle_error,
                    on_close=self._handle_close,
                )
                if self.ping_interval:
                    self._ws.run_forever(ping_interval=self.ping_interval, ping_timeout=self.ping_timeout)
                else:
                    self._ws.run_forever()
            except Exception as exc:
                logger.exception(f"[{self.name}] socket loop crashed: {exc}")
            finally:
                self._ws = None

            if self._stop.is_set():
                break

            if self._opened:
                self._backoff.reset()
            delay = self._backoff.next_delay()
            if delay is None:
                self._set_state(ConnectionState.DISCONNECTED)
                err = StreamError(
                    f"{self.name}: maximum reconnection attempts reached "
                    f"({self._backoff.policy.max_attempts})"
                )
                logger.error(str(err))
                self._report(err)
                return

            self._set_state(ConnectionState.BACKOFF)
            logger.warning(
                f"[{self.name}] disconnected, reconnecting in {delay:.1f}s "
                f"({self._backoff.attempts}/{self._backoff.policy.max_attempts})"
            )
            if self._stop.wait(delay):
                break

        self._set_state(ConnectionState.DISCONNECTED)

    def _handle_open(self, _ws) -> None:
        self._opened = True
        self._set_state(ConnectionState.CONNECTED)
        logger.info(f"[{self.name}] connected")

    def _handle_message(self, _ws, message: str) -> None:
        try:
            price = self._parse(message)
        except Exception as exc:
            logger.warning(f"[{self.name}] unparseable message: {exc}")
            self._report(exc)
            return
        if price is not None:
            self._deliver(price)

    def _handle_error(self, _ws, error) -> None:
        # an error is not always followed by close; state changes happen on close
        logger.error(f"[{self.name}] socket error: {error}")

    def _handle_close(self, _ws, *_args) -> None:
        logger.warning(f"[{self.name}] socket closed")

    # ----- dispatcher thread -----

    def _deliver(self, price: float) -> None:
        with self._slot_lock:
            self._latest = price
        self._pending.set()

    def _dispatch_loop(self) -> None:
        while True:
            self._pending.wait()
            if self._stop.is_set():
                return
            with self._slot_lock:
                price = self._latest
                self._latest = None
                self._pending.clear()
            if price is None:
                continue
            try:
                self._on_price(price)
            except Exception:
                logger.exception(f"[{self.name}] price handler failed")

    def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception(f"[{self.name}] error handler failed")
