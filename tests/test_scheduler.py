import pytest
import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from src.connectors.kraken_rest import PriceSourceError
from src.core.models import BarRecord, BarState, ErrorKind, FetchResult, MinuteBar
from src.core.scheduler import WindowScheduler
from src.core.sink import PersistenceError
from tests.conftest import PAIRS, FakeClock, prices

def persisted(sink):
    return [c.args[0] for c in sink.append.call_args_list]

@pytest.mark.asyncio
async def test_initial_state(scheduler):
    assert scheduler.current_minute == datetime(2025, 1, 1, 12, 0)
    assert not scheduler.store.any_samples()
    assert scheduler.snapshot() == {"X": BarState.EMPTY, "Y": BarState.EMPTY}

@pytest.mark.asyncio
async def test_sampling_tick_appends_and_presents(scheduler, source, presenter):
    source.fetch.return_value = prices(XPAIR=100, YPAIR=20)

    results = await scheduler.sampling_tick()

    assert all(r.ok for r in results)
    source.fetch.assert_called_once()
    assert sorted(source.fetch.call_args.args[0]) == ["XPAIR", "YPAIR"]
    assert len(scheduler.store["X"]) == 1
    assert scheduler.store["X"].snapshot_ordered()[0].source == "Kraken"

    snapshot, minute, now = presenter.render.call_args.args
    assert isinstance(snapshot["X"], MinuteBar)
    assert snapshot["X"].close == 100
    assert minute == datetime(2025, 1, 1, 12, 0)

@pytest.mark.asyncio
async def test_symbol_failure_is_contained(scheduler, source, presenter):
    source.fetch.return_value = prices(XPAIR=100, YPAIR=20)
    await scheduler.sampling_tick()

    source.fetch.return_value = FetchResult(prices={"XPAIR": Decimal(101)}, errors={"YPAIR": "unparseable price 'abc'"})
    results = await scheduler.sampling_tick()

    by_symbol = {r.symbol: r for r in results}
    assert by_symbol["X"].ok
    assert by_symbol["Y"].kind == ErrorKind.MALFORMED

    # Y keeps what it had, X got its sample
    assert len(scheduler.store["Y"]) == 1
    assert len(scheduler.store["X"]) == 2

    snapshot = presenter.render.call_args.args[0]
    assert snapshot["Y"] == BarState.ERROR
    assert isinstance(snapshot["X"], MinuteBar)

@pytest.mark.asyncio
async def test_fetch_failure_does_not_escape(scheduler, source, presenter):
    source.fetch.side_effect = PriceSourceError("Kraken API errors: EService:Unavailable")

    results = await scheduler.sampling_tick()

    assert [r.kind for r in results] == [ErrorKind.FETCH_FAILED, ErrorKind.FETCH_FAILED]
    assert not scheduler.store.any_samples()
    assert presenter.render.call_args.args[0] == {"X": BarState.ERROR, "Y": BarState.ERROR}

@pytest.mark.asyncio
async def test_unexpected_fetch_exception_is_contained(scheduler, source):
    source.fetch.side_effect = RuntimeError("socket exploded")
    results = await scheduler.sampling_tick()
    assert all(r.kind == ErrorKind.FETCH_FAILED for r in results)

@pytest.mark.asyncio
async def test_missing_symbol_is_skipped(scheduler, source, presenter):
    source.fetch.return_value = prices(XPAIR=100)

    results = await scheduler.sampling_tick()

    assert {r.symbol: r.kind for r in results} == {"X": None, "Y": ErrorKind.MISSING}
    assert presenter.render.call_args.args[0]["Y"] == BarState.EMPTY

@pytest.mark.asyncio
async def test_non_positive_price_rejected(scheduler, source):
    source.fetch.return_value = prices(XPAIR=0, YPAIR=-2)

    results = await scheduler.sampling_tick()

    assert all(r.kind == ErrorKind.REJECTED for r in results)
    assert not scheduler.store.any_samples()

@pytest.mark.asyncio
async def test_non_positive_price_kept_when_allowed(source, sink, clock):
    scheduler = WindowScheduler(source, sink, pairs=PAIRS, reject_non_positive=False, clock=clock)
    source.fetch.return_value = prices(XPAIR=0)

    await scheduler.sampling_tick()
    assert len(scheduler.store["X"]) == 1

@pytest.mark.asyncio
async def test_sampling_defers_after_minute_change(scheduler, source, clock):
    clock.advance(seconds=55) # 12:01:05, rollover not run yet

    results = await scheduler.sampling_tick()

    assert results == []
    source.fetch.assert_not_called()

@pytest.mark.asyncio
async def test_rollover_persists_once_and_clears(scheduler, source, sink, clock):
    source.fetch.return_value = prices(XPAIR=100)
    await scheduler.sampling_tick()
    clock.advance(seconds=10)
    source.fetch.return_value = prices(XPAIR=110)
    await scheduler.sampling_tick()

    # Nothing happens inside the minute
    assert await scheduler.boundary_tick() == []

    clock.now = datetime(2025, 1, 1, 12, 1, 0, 500000)
    bars = await scheduler.boundary_tick()

    assert len(bars) == 1
    records = persisted(sink)
    assert len(records) == 1
    record = records[0]
    assert isinstance(record, BarRecord)
    assert record.symbol == "X"
    assert record.sample_count == 2
    assert record.open == 100
    assert record.close == 110
    assert record.minute_start == datetime(2025, 1, 1, 12, 0)

    assert scheduler.store["X"].is_empty()
    assert scheduler.current_minute == datetime(2025, 1, 1, 12, 1)

    # Second check in the same minute is a no-op
    assert await scheduler.boundary_tick() == []
    assert sink.append.call_count == 1

@pytest.mark.asyncio
async def test_rollover_skips_empty_buffers(scheduler, sink, clock):
    clock.advance(minutes=1)
    bars = await scheduler.boundary_tick()

    assert bars == []
    sink.append.assert_not_called()
    assert scheduler.current_minute == datetime(2025, 1, 1, 12, 1)

@pytest.mark.asyncio
async def test_sink_failure_does_not_block_other_symbols(scheduler, source, sink, clock):
    source.fetch.return_value = prices(XPAIR=100, YPAIR=20)
    await scheduler.sampling_tick()
    sink.append.side_effect = [PersistenceError("disk full"), None]

    clock.advance(minutes=1)
    bars = await scheduler.boundary_tick()

    assert len(bars) == 2
    assert sink.append.call_count == 2
    assert not scheduler.store.any_samples()
    assert scheduler.current_minute == datetime(2025, 1, 1, 12, 1)

@pytest.mark.asyncio
async def test_prices_fetched_across_rollover_are_discarded(scheduler, source, sink, clock):
    source.fetch.return_value = prices(XPAIR=100)
    await scheduler.sampling_tick()

    async def slow_fetch(pairs):
        # The minute closes while the request is in flight
        clock.advance(minutes=1)
        await scheduler.boundary_tick()
        return prices(XPAIR=999)

    source.fetch.side_effect = slow_fetch
    results = await scheduler.sampling_tick()

    assert results == []
    assert scheduler.store["X"].is_empty()
    assert [r.sample_count for r in persisted(sink)] == [1]

@pytest.mark.asyncio
async def test_boundary_not_blocked_by_slow_fetch(scheduler, source, sink, clock):
    source.fetch.return_value = prices(XPAIR=100)
    await scheduler.sampling_tick()

    release = asyncio.Event()

    async def hanging_fetch(pairs):
        await release.wait()
        return prices(XPAIR=200)

    source.fetch.side_effect = hanging_fetch
    pending = asyncio.create_task(scheduler.sampling_tick())
    await asyncio.sleep(0)

    clock.advance(minutes=1)
    bars = await asyncio.wait_for(scheduler.boundary_tick(), timeout=1.0)
    assert len(bars) == 1

    release.set()
    assert await pending == []
    assert scheduler.store["X"].is_empty()

@pytest.mark.asyncio
async def test_no_sample_counted_in_two_minutes(scheduler, source, sink, clock):
    accepted = 0
    for minute in range(3):
        clock.now = datetime(2025, 1, 1, 12, minute, 1)
        await scheduler.boundary_tick()
        for second in (1, 6, 11, 16):
            clock.now = datetime(2025, 1, 1, 12, minute, second)
            source.fetch.return_value = prices(XPAIR=100 + second, YPAIR=10 + minute)
            results = await scheduler.sampling_tick()
            accepted += sum(1 for r in results if r.ok)

    clock.now = datetime(2025, 1, 1, 12, 3, 0)
    await scheduler.boundary_tick()

    records = persisted(sink)
    assert sum(r.sample_count for r in records) == accepted == 24
    keys = [(r.symbol, r.minute_start) for r in records]
    assert len(keys) == len(set(keys)) == 6

@pytest.mark.asyncio
async def test_shutdown_flushes_exactly_once(scheduler, source, sink):
    source.fetch.return_value = prices(XPAIR=100, YPAIR=20)
    await scheduler.sampling_tick()

    first = await scheduler.stop()
    second = await scheduler.stop()

    assert len(first) == 2
    assert second == []
    assert sink.append.call_count == 2
    assert not scheduler.store.any_samples()

@pytest.mark.asyncio
async def test_shutdown_with_empty_buffers_writes_nothing(scheduler, sink):
    assert await scheduler.stop() == []
    sink.append.assert_not_called()

@pytest.mark.asyncio
async def test_loops_run_and_stop(source, sink, presenter, clock):
    scheduler = WindowScheduler(
        source, sink, presenter=presenter, pairs=PAIRS,
        sample_interval=0.01, boundary_interval=0.01, clock=clock,
    )
    source.fetch.return_value = prices(XPAIR=100)

    await scheduler.start()
    assert scheduler.is_running
    await asyncio.sleep(0.05)
    bars = await scheduler.stop()

    assert not scheduler.is_running
    assert source.fetch.call_count >= 1
    assert len(bars) == 1
    assert bars[0].sample_count == source.fetch.call_count

@pytest.mark.asyncio
async def test_presenter_failure_does_not_break_tick(scheduler, source, presenter):
    presenter.render.side_effect = RuntimeError("terminal gone")
    source.fetch.return_value = prices(XPAIR=100)

    results = await scheduler.sampling_tick()
    assert results[0].ok
    assert len(scheduler.store["X"]) == 1

@pytest.mark.asyncio
async def test_processing_fault_isolated_to_symbol(scheduler, source):
    source.fetch.return_value = prices(XPAIR=100, YPAIR=20)
    scheduler.store["X"].append = MagicMock(side_effect=RuntimeError("boom"))

    results = await scheduler.sampling_tick()

    by_symbol = {r.symbol: r for r in results}
    assert by_symbol["X"].kind == ErrorKind.PROCESSING
    assert by_symbol["Y"].ok
    assert len(scheduler.store["Y"]) == 1

@pytest.mark.asyncio
async def test_malformed_entry_keeps_other_symbols():
    from src.connectors.kraken_rest import KrakenTickerClient

    client = KrakenTickerClient()
    client.client = MagicMock()
    response = MagicMock()
    response.json.return_value = {"error": [], "result": {"XPAIR": ["50000.1"], "YPAIR": {"c": ["2500.5", "1"]}}}
    client.client.get = AsyncMock(return_value=response)

    clock = FakeClock(datetime(2025, 1, 1, 12, 0, 10))
    scheduler = WindowScheduler(client, MagicMock(), pairs=PAIRS, clock=clock)

    results = await scheduler.sampling_tick()

    assert {r.symbol: r.kind for r in results} == {"X": ErrorKind.MALFORMED, "Y": None}
    assert scheduler.store["Y"].snapshot_ordered()[0].price == Decimal("2500.5")
    assert scheduler.snapshot()["X"] == BarState.ERROR

@pytest.mark.asyncio
async def test_stop_waits_for_rollover_that_has_not_started(scheduler, source, sink, presenter, clock):
    source.fetch.return_value = prices(XPAIR=100)
    await scheduler.sampling_tick()

    clock.advance(minutes=1)
    boundary = asyncio.create_task(scheduler.boundary_tick())
    # boundary_tick has scheduled the rollover but it has not taken the lock yet
    await asyncio.sleep(0)
    scheduler._tasks = [boundary]

    await scheduler.stop()

    assert sink.append.call_count == 1
    assert scheduler.current_minute == datetime(2025, 1, 1, 12, 1)
    announcements = presenter.announce.call_count

    # Nothing left running once stop() has returned
    await asyncio.sleep(0.01)
    assert presenter.announce.call_count == announcements
    assert sink.append.call_count == 1
