import asyncio
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set
from src.config import settings
from src.connectors.kraken_rest import PriceSourceError
from src.core.bars import build_minute_bar, floor_to_minute
from src.core.buffer import SampleStore
from src.core.logger import logger
from src.core.models import BarRecord, BarState, ErrorKind, FetchResult, MinuteBar, SymbolResult
from src.core.presenter import Snapshot
from src.core.sink import PersistenceError

class MinuteMarker:
    """The minute currently being collected. Only rollover moves it."""

    def __init__(self, minute: datetime):
        self._minute = minute
        self._lock = threading.Lock()

    def get(self) -> datetime:
        with self._lock:
            return self._minute

    def set(self, minute: datetime):
        with self._lock:
            self._minute = minute

class WindowScheduler:
    """
    Samples prices on a short period and rolls minute windows over on a 1s period.

    The two loops only share the sample buffers and the minute marker. Rollover and the
    shutdown flush are serialized by a rollover lock which the sampling path never takes,
    so a slow ticker call can never hold up the boundary check.
    """

    def __init__(
        self,
        price_source,
        sink,
        presenter=None,
        pairs: Optional[Dict[str, str]] = None,
        sample_interval: Optional[float] = None,
        boundary_interval: Optional[float] = None,
        reject_non_positive: Optional[bool] = None,
        clock: Callable[[], datetime] = datetime.now,
        source_tag: str = "Kraken",
    ):
        self.price_source = price_source
        self.sink = sink
        self.presenter = presenter
        self.pairs = dict(pairs if pairs is not None else settings.KRAKEN_PAIRS)
        self.sample_interval = sample_interval or settings.SAMPLE_INTERVAL_SECONDS
        self.boundary_interval = boundary_interval or settings.BOUNDARY_INTERVAL_SECONDS
        self.reject_non_positive = (
            settings.REJECT_NON_POSITIVE_PRICES if reject_non_positive is None else reject_non_positive
        )
        self.clock = clock
        self.source_tag = source_tag

        self.store = SampleStore(self.pairs)
        self.marker = MinuteMarker(floor_to_minute(self.clock()))
        self.is_running = False
        self.last_sample_at: Optional[datetime] = None
        self._failed: Set[str] = set()
        self._rollover_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._rollover_task: Optional[asyncio.Future] = None
        self._stopped = False

    @property
    def current_minute(self) -> datetime:
        return self.marker.get()

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._tasks = [
            asyncio.create_task(self._periodic(self.sampling_tick, self.sample_interval, 0.0, "sampling")),
            asyncio.create_task(self._periodic(self.boundary_tick, self.boundary_interval, self.boundary_interval, "boundary")),
        ]
        logger.info(f"Monitor started for {', '.join(self.pairs)} (collecting minute {self.current_minute:%H:%M})")

    async def stop(self) -> List[MinuteBar]:
        """Stop both loops, then flush whatever the current minute holds. Safe to call twice."""
        if self._stopped:
            return []
        self._stopped = True
        self.is_running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        # Let a rollover that was already started finish its writes
        if self._rollover_task is not None:
            await asyncio.gather(self._rollover_task, return_exceptions=True)
            self._rollover_task = None

        bars = []
        if self.store.any_samples():
            logger.info("Flushing remaining samples before shutdown")
            bars = await self.rollover(None)

        logger.info("Monitor stopped")
        return bars

    async def _periodic(self, action, interval: float, initial_delay: float, name: str):
        loop = asyncio.get_running_loop()
        await asyncio.sleep(initial_delay)
        while self.is_running:
            started = loop.time()
            try:
                await action()
            except Exception as e:
                logger.error(f"Critical error in {name} loop: {e}", exc_info=True)
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    # --- Sampling ---

    async def sampling_tick(self) -> List[SymbolResult]:
        timestamp = self.clock()
        tick_minute = floor_to_minute(timestamp)

        # Minute already changed: leave the buffers alone until rollover has run
        if tick_minute != self.marker.get():
            return []

        started = time.perf_counter()
        try:
            fetched = await self.price_source.fetch(self.pairs.values())
        except PriceSourceError as e:
            logger.error(str(e))
            return self._finish_tick([SymbolResult.failed(s, ErrorKind.FETCH_FAILED, str(e)) for s in self.pairs])
        except Exception as e:
            logger.error(f"Price fetch failed: {e}", exc_info=True)
            return self._finish_tick([SymbolResult.failed(s, ErrorKind.FETCH_FAILED, str(e)) for s in self.pairs])
        elapsed_ms = (time.perf_counter() - started) * 1000

        # A rollover started while we were waiting: these prices belong to a closed minute
        if self.marker.get() != tick_minute or floor_to_minute(self.clock()) != tick_minute:
            logger.info(f"Minute {tick_minute:%H:%M} closed during fetch, discarding {len(fetched.prices)} prices")
            return []

        results = [self._ingest(symbol, pair, fetched, timestamp) for symbol, pair in self.pairs.items()]
        self.last_sample_at = timestamp
        ok = sum(1 for r in results if r.ok)
        logger.debug(f"Sampled {ok}/{len(results)} symbols in {elapsed_ms:.0f}ms")
        return self._finish_tick(results)

    def _ingest(self, symbol: str, pair: str, fetched: FetchResult, timestamp: datetime) -> SymbolResult:
        try:
            if pair in fetched.errors:
                return SymbolResult.failed(symbol, ErrorKind.MALFORMED, fetched.errors[pair])

            price = fetched.prices.get(pair)
            if price is None:
                return SymbolResult.failed(symbol, ErrorKind.MISSING, f"{pair} not in ticker response")

            if self.reject_non_positive and price <= 0:
                return SymbolResult.failed(symbol, ErrorKind.REJECTED, f"non-positive price {price}")

            self.store[symbol].append(price, timestamp, source=self.source_tag)
            return SymbolResult(symbol=symbol)
        except Exception as e:
            logger.error(f"Error processing {symbol}: {e}", exc_info=True)
            return SymbolResult.failed(symbol, ErrorKind.PROCESSING, str(e))

    def _finish_tick(self, results: List[SymbolResult]) -> List[SymbolResult]:
        problems = [r for r in results if not r.ok]
        for r in problems:
            if r.kind == ErrorKind.MISSING:
                logger.debug(f"{r.symbol}: {r.message}")
            elif r.kind != ErrorKind.FETCH_FAILED:
                logger.warning(f"{r.symbol} skipped ({r.kind.value}): {r.message}")

        # Missing symbols are skipped silently; anything else is shown as an error this tick
        self._failed = {r.symbol for r in problems if r.kind != ErrorKind.MISSING}
        self._present()
        return results

    # --- Presentation ---

    def snapshot(self) -> Snapshot:
        minute = self.marker.get()
        failed = self._failed
        view: Snapshot = {}
        for buf in self.store:
            if buf.symbol in failed:
                view[buf.symbol] = BarState.ERROR
                continue
            bar = build_minute_bar(buf.symbol, minute, buf.snapshot_ordered())
            view[buf.symbol] = bar if bar is not None else BarState.EMPTY
        return view

    def _present(self):
        if self.presenter is None:
            return
        try:
            self.presenter.render(self.snapshot(), self.marker.get(), self.clock())
        except Exception as e:
            logger.error(f"Display error: {e}")

    def _announce(self, message: str):
        if self.presenter is not None and hasattr(self.presenter, "announce"):
            self.presenter.announce(message)

    # --- Rollover ---

    async def boundary_tick(self) -> List[MinuteBar]:
        wall_minute = floor_to_minute(self.clock())
        if wall_minute == self.marker.get():
            return []
        # Shielded so a stop request can't interrupt a flush halfway through;
        # stop() waits on the inner task before its own flush
        self._rollover_task = asyncio.ensure_future(self.rollover(wall_minute))
        return await asyncio.shield(self._rollover_task)

    async def rollover(self, next_minute: Optional[datetime]) -> List[MinuteBar]:
        """
        Close the current minute: drain every buffer, persist its bar, then move the
        marker to next_minute. With next_minute=None the marker stays put (shutdown flush).
        """
        async with self._rollover_lock:
            outgoing = self.marker.get()
            if next_minute is not None and next_minute == outgoing:
                return []

            self._announce(f"\n{'=' * 63}\n   Minute {outgoing:%H:%M} Complete - Processing Data\n{'=' * 63}")
            bars = self._close_buffers(outgoing)
            await self._persist(bars)

            if next_minute is not None:
                self.marker.set(next_minute)
                self._failed = set()
                self._announce(f"Data cleared, now collecting for minute {next_minute:%H:%M}\n")

            logger.info(f"Minute {outgoing:%H:%M} closed: {len(bars)} bars")
            return bars

    def _close_buffers(self, minute: datetime) -> List[MinuteBar]:
        bars = []
        for buf in self.store:
            try:
                # drain() takes and clears under one lock hold, so no sample lands in two minutes
                bar = build_minute_bar(buf.symbol, minute, buf.drain())
            except Exception as e:
                logger.error(f"Error closing minute for {buf.symbol}: {e}", exc_info=True)
                continue
            if bar is not None:
                bars.append(bar)
        return bars

    async def _persist(self, bars: Iterable[MinuteBar]) -> List[SymbolResult]:
        results = []
        for bar in bars:
            try:
                await asyncio.to_thread(self.sink.append, BarRecord.from_bar(bar))
                results.append(SymbolResult(symbol=bar.symbol))
            except PersistenceError as e:
                logger.error(f"{bar.symbol} {bar.minute:%H:%M} bar lost: {e}")
                results.append(SymbolResult.failed(bar.symbol, ErrorKind.PERSISTENCE, str(e)))
            except Exception as e:
                logger.error(f"{bar.symbol} {bar.minute:%H:%M} bar lost: {e}", exc_info=True)
                results.append(SymbolResult.failed(bar.symbol, ErrorKind.PERSISTENCE, str(e)))
        return results
