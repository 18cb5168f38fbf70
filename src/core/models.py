from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Dict, Optional

class PriceSample(BaseModel):
    """One timestamped price observation for one instrument"""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    price: Decimal
    source: str = "API"

class MinuteBar(BaseModel):
    """
    OHLC summary of every sample seen for one symbol during one calendar minute.
    Built by src.core.bars.build_minute_bar; volatility has no default because it can
    only come from the samples themselves.
    """
    model_config = ConfigDict(frozen=True)

    symbol: str
    minute: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    sample_count: int
    volatility: Decimal

    @property
    def percent_change(self) -> Decimal:
        if self.open == 0:
            return Decimal(0)
        return (self.close - self.open) / self.open * 100

    @property
    def spread(self) -> Decimal:
        return self.high - self.low

class BarState(str, Enum):
    """Placeholder shown instead of a bar when there is nothing real to show"""
    EMPTY = "EMPTY"
    ERROR = "ERROR"

class ErrorKind(str, Enum):
    FETCH_FAILED = "FETCH_FAILED"
    MISSING = "MISSING"
    MALFORMED = "MALFORMED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    PERSISTENCE = "PERSISTENCE"

class SymbolResult(BaseModel):
    """Outcome of processing one symbol within a tick"""
    symbol: str
    ok: bool = True
    kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def failed(cls, symbol: str, kind: ErrorKind, message: str = "") -> "SymbolResult":
        return cls(symbol=symbol, ok=False, kind=kind, message=message)

class FetchResult(BaseModel):
    """Batched ticker response: prices by pair, plus pairs whose price could not be read"""
    prices: Dict[str, Decimal] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

class BarRecord(BaseModel):
    """A completed minute bar as written to the bar log"""
    minute_start: datetime
    symbol: str
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    sample_count: int
    percent_change: Decimal
    volatility: Decimal
    spread: Decimal

    @classmethod
    def from_bar(cls, bar: MinuteBar) -> "BarRecord":
        return cls(
            minute_start=bar.minute,
            symbol=bar.symbol,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            sample_count=bar.sample_count,
            percent_change=bar.percent_change,
            volatility=bar.volatility,
            spread=bar.spread,
        )

    def to_row(self) -> list:
        return [
            self.minute_start.strftime("%Y-%m-%d %H:%M:%S"),
            self.symbol,
            str(self.open),
            str(self.high),
            str(self.low),
            str(self.close),
            self.sample_count,
            f"{self.percent_change:.4f}",
            f"{self.volatility:.4f}",
            str(self.spread),
        ]
