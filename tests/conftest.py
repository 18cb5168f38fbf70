import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from src.core.models import FetchResult
from src.core.scheduler import WindowScheduler

PAIRS = {"X": "XPAIR", "Y": "YPAIR"}

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

def prices(**by_pair) -> FetchResult:
    return FetchResult(prices={pair: Decimal(str(p)) for pair, p in by_pair.items()})

@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, 10))

@pytest.fixture
def source():
    src = MagicMock()
    src.fetch = AsyncMock(return_value=FetchResult())
    return src

@pytest.fixture
def sink():
    return MagicMock()

@pytest.fixture
def presenter():
    return MagicMock()

@pytest.fixture
def scheduler(source, sink, presenter, clock):
    return WindowScheduler(
        price_source=source,
        sink=sink,
        presenter=presenter,
        pairs=PAIRS,
        sample_interval=5.0,
        boundary_interval=1.0,
        reject_non_positive=True,
        clock=clock,
    )
