"""
Binance Book-Ticker Stream

This module runs the streaming fast path for Binance: a background thread
holds a combined-stream WebSocket open and pushes every raw frame, paired
with its receive time, into the connector's RingBuffer. The ingestion thread
drains and decodes them.

It handles:
- Combined-stream subscription (<symbol>@bookTicker for every ticker symbol)
- Automatic reconnection after ``retry_delay`` seconds
- Resubscription when the symbol set changes
- Backpressure: when the ring buffer is full the frame is dropped and counted
- Graceful shutdown (recv() uses a timeout so the stop flag is checked)

Supported Streams:
    - Individual Symbol Book Ticker: {symbol}@bookTicker

WebSocket Documentation:
    https://binance-docs.github.io/apidocs/spot/en/#individual-symbol-book-ticker-streams

Message Format (combined stream):
    {
      "stream": "btcusdt@bookTicker",
      "data": {
        "u": 400900217,        // order book updateId
        "s": "BTCUSDT",        // symbol
        "b": "25.35190000",    // best bid price
        "B": "31.21000000",    // best bid qty
        "a": "25.36520000",    // best ask price
        "A": "40.66000000"     // best ask qty
      }
    }
"""

import threading
from typing import Callable, List, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from core.config import settings
from core.logging import get_logger, log_stream_event
from core.ring_buffer import RingBuffer
from core.utils.time import current_utc_datetime

EXCHANGE_NAME = "binance"


class BinanceBookTickerStream:
    """
    Producer thread feeding raw bookTicker frames into a RingBuffer.

    This object is the buffer's only producer. It never decodes frames; the
    consumer side does that on the ingestion thread.

    Attributes:
        dropped: Frames discarded because the buffer was full
        received: Frames read from the socket

    Example:
        >>> buffer = RingBuffer(4096)
        >>> stream = BinanceBookTickerStream(buffer)
        >>> stream.set_symbols(["BTCUSDT", "ETHUSDT"])
        >>> stream.start()
        >>> ...
        >>> stream.stop()
    """

    def __init__(
        self,
        buffer: RingBuffer,
        url: Optional[str] = None,
        retry_delay: Optional[float] = None,
        recv_timeout: float = 1.0,
        on_error: Optional[Callable[[str, str], None]] = None,
        connect: Callable = ws_connect
    ):
        """
        Initialize the stream.

        Args:
            buffer: Ring buffer to fill
            url: Combined-stream base URL; defaults to settings.binance_stream_url
            retry_delay: Seconds to wait before reconnecting after a failure
            recv_timeout: Max seconds a recv() may block before the stop flag is rechecked
            on_error: Optional (context, message) callback for connection failures
            connect: WebSocket connect function (tests substitute a fake)
        """
        self._buffer = buffer
        self.url = url or settings.binance_stream_url
        self.retry_delay = settings.connect_retry_delay if retry_delay is None else retry_delay
        self.recv_timeout = recv_timeout
        self.on_error = on_error
        self._connect = connect

        self._symbols: List[str] = []
        self._symbols_lock = threading.Lock()
        self._stop = threading.Event()
        self._resubscribe = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._connected = False

        self.dropped = 0
        self.received = 0
        self.logger = get_logger(__name__)

    # ============================================
    # Subscription Management
    # ============================================

    def set_symbols(self, symbols: List[str]) -> None:
        """Replace the subscribed symbol set; an open session reconnects with the new set."""
        normalized = sorted({s.lower() for s in symbols})
        with self._symbols_lock:
            if normalized == self._symbols:
                return
            self._symbols = normalized
        self._resubscribe.set()
        log_stream_event(EXCHANGE_NAME, "resubscribe", details=",".join(normalized) or "none")

    def symbols(self) -> List[str]:
        with self._symbols_lock:
            return list(self._symbols)

    def stream_url(self, symbols: List[str]) -> str:
        """
        Build the combined-stream URL.

        Example:
            >>> stream.stream_url(["btcusdt", "ethusdt"])
            'wss://stream.binance.com:9443/stream?streams=btcusdt@bookTicker/ethusdt@bookTicker'
        """
        streams = "/".join(f"{s.lower()}@bookTicker" for s in symbols)
        return f"{self.url}?streams={streams}"

    # ============================================
    # Lifecycle
    # ============================================

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="binance-book-ticker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the producer thread and wait for it to exit."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout if timeout is not None else self.recv_timeout + 5.0)
            if thread.is_alive():
                self.logger.warning("Book-ticker thread did not exit in time")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def buffer(self) -> RingBuffer:
        return self._buffer

    # ============================================
    # Producer Loop
    # ============================================

    def _run(self) -> None:
        while not self._stop.is_set():
            symbols = self.symbols()
            if not symbols:
                self._stop.wait(self.recv_timeout)
                continue

            self._resubscribe.clear()
            failed = False
            try:
                with self._connect(self.stream_url(symbols), open_timeout=self.retry_delay) as ws:
                    self._connected = True
                    log_stream_event(EXCHANGE_NAME, "connected", details=f"{len(symbols)} symbol(s)")
                    self._pump(ws)
            except (OSError, WebSocketException) as e:
                failed = True
                log_stream_event(EXCHANGE_NAME, "error", details=str(e))
                if self.on_error is not None:
                    self.on_error("stream", f"WebSocket failure: {e}")
            finally:
                self._connected = False

            if failed and not self._stop.is_set():
                self._stop.wait(self.retry_delay)

        log_stream_event(EXCHANGE_NAME, "disconnected")

    def _pump(self, ws) -> None:
        while not self._stop.is_set() and not self._resubscribe.is_set():
            try:
                raw = ws.recv(timeout=self.recv_timeout)
            except TimeoutError:
                continue

            self.received += 1
            if not self._buffer.push((current_utc_datetime(), raw)):
                self.dropped += 1
                if self.dropped % 1000 == 1:
                    self.logger.warning(f"Ring buffer full, dropped {self.dropped} frame(s) so far")
