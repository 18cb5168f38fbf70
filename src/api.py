from datetime import datetime
from typing import Optional
from fastapi import APIRouter, HTTPException
from src.config import settings
from src.core.models import MinuteBar

router = APIRouter()

class MonitorHandle:
    def __init__(self):
        self.scheduler = None

    def set_scheduler(self, scheduler):
        self.scheduler = scheduler

monitor = MonitorHandle()

def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None

def _require_scheduler():
    if monitor.scheduler is None:
        raise HTTPException(status_code=503, detail="Monitor not running")
    return monitor.scheduler

@router.get("/health")
def health():
    scheduler = monitor.scheduler
    return {
        "status": "ok",
        "version": settings.APP_VERSION,
        "running": bool(scheduler and scheduler.is_running),
        "current_minute": iso(scheduler.current_minute) if scheduler else None,
        "last_sample_at": iso(scheduler.last_sample_at) if scheduler else None,
    }

@router.get("/snapshot")
def snapshot():
    """Live bars of the minute being collected. Symbols without a bar report their state."""
    scheduler = _require_scheduler()
    symbols = {}
    for symbol, entry in scheduler.snapshot().items():
        if isinstance(entry, MinuteBar):
            symbols[symbol] = {
                "state": "OK",
                "open": str(entry.open),
                "high": str(entry.high),
                "low": str(entry.low),
                "close": str(entry.close),
                "samples": entry.sample_count,
                "percent_change": f"{entry.percent_change:.4f}",
                "volatility": f"{entry.volatility:.4f}",
                "spread": str(entry.spread),
            }
        else:
            symbols[symbol] = {"state": entry.value}

    return {"current_minute": iso(scheduler.current_minute), "symbols": symbols}
