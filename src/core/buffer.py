import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List
from src.core.bars import order_samples
from src.core.models import PriceSample

class SampleBuffer:
    """
    Samples collected for one symbol during the current minute.

    Every operation holds the buffer's own lock for its whole duration and never
    awaits, so buffers of different symbols never contend with each other.
    """

    def __init__(self, symbol: str):
        self.symbol = symbol
        self._samples: List[PriceSample] = []
        self._lock = threading.Lock()

    def append(self, price: Decimal, timestamp: datetime, source: str = "API") -> PriceSample:
        sample = PriceSample(timestamp=timestamp, price=price, source=source)
        with self._lock:
            self._samples.append(sample)
        return sample

    def snapshot_ordered(self) -> List[PriceSample]:
        with self._lock:
            samples = list(self._samples)
        return order_samples(samples)

    def clear(self):
        with self._lock:
            self._samples.clear()

    def drain(self) -> List[PriceSample]:
        """Take the ordered contents and empty the buffer in one step."""
        with self._lock:
            samples = list(self._samples)
            self._samples.clear()
        return order_samples(samples)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._samples

    def __len__(self):
        with self._lock:
            return len(self._samples)

class SampleStore:
    """Fixed set of per-symbol buffers, created once at startup and never replaced."""

    def __init__(self, symbols: Iterable[str]):
        self._buffers: Dict[str, SampleBuffer] = {sym: SampleBuffer(sym) for sym in symbols}

    def __getitem__(self, symbol: str) -> SampleBuffer:
        return self._buffers[symbol]

    def __iter__(self) -> Iterator[SampleBuffer]:
        return iter(self._buffers.values())

    def __len__(self):
        return len(self._buffers)

    @property
    def symbols(self) -> List[str]:
        return list(self._buffers)

    def any_samples(self) -> bool:
        return any(not buf.is_empty() for buf in self)

    def clear_all(self):
        for buf in self:
            buf.clear()
