from decimal import Decimal
from datetime import datetime
from typing import Iterable, List, Optional
from src.core.models import MinuteBar, PriceSample

def floor_to_minute(ts: datetime) -> datetime:
    """Round timestamp down to start of its minute."""
    return ts.replace(second=0, microsecond=0)

def order_samples(samples: Iterable[PriceSample]) -> List[PriceSample]:
    # sorted() is stable, so ties keep insertion order
    return sorted(samples, key=lambda s: s.timestamp)

def volatility(prices: List[Decimal]) -> Decimal:
    """
    Population standard deviation of prices relative to their mean, in percent.
    0 when fewer than 2 prices or the mean is 0.
    """
    if len(prices) < 2:
        return Decimal(0)

    mean = sum(prices) / len(prices)
    if mean == 0:
        return Decimal(0)

    variance = sum((p - mean) * (p - mean) for p in prices) / len(prices)
    return variance.sqrt() / mean * 100

def build_minute_bar(symbol: str, minute: datetime, samples: Iterable[PriceSample]) -> Optional[MinuteBar]:
    """
    Aggregate one minute of samples into a bar.
    Returns None when there are no samples; callers show BarState.EMPTY instead.
    """
    ordered = order_samples(samples)
    if not ordered:
        return None

    prices = [s.price for s in ordered]
    high = low = prices[0]
    for price in prices[1:]:
        if price > high:
            high = price
        if price < low:
            low = price

    return MinuteBar(
        symbol=symbol,
        minute=floor_to_minute(minute),
        open=prices[0],
        high=high,
        low=low,
        close=prices[-1],
        sample_count=len(prices),
        volatility=volatility(prices),
    )
