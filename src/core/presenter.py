import sys
from datetime import datetime
from typing import Dict, TextIO, Union
from src.core.models import BarState, MinuteBar

Snapshot = Dict[str, Union[MinuteBar, BarState]]

RULE = "=" * 63
HEADER = " Coin |    Open     |     Low     |    High     |    Close    | % Change | Volatility | Spread  | Samples"
DIVIDER = "------|-------------|-------------|-------------|-------------|----------|------------|---------|--------"

class ConsoleTablePresenter:
    """Redraws the live minute table on a terminal stream."""

    def __init__(self, stream: TextIO = None, clear_screen: bool = True, title: str = "5-Second Continuous Monitor (Kraken)"):
        self.stream = stream or sys.stdout
        self.clear_screen = clear_screen
        self.title = title

    def render(self, snapshot: Snapshot, current_minute: datetime, now: datetime):
        lines = [
            "=" * 47,
            f"        {self.title}",
            "=" * 47,
            "",
            RULE,
            f"   Current Minute: {current_minute:%H:%M}     >>------<<     {now:%H:%M:%S}",
            RULE,
            HEADER,
            DIVIDER,
        ]
        for symbol, entry in snapshot.items():
            lines.append(format_row(symbol, entry))
        lines.append("")

        text = "\n".join(lines) + "\n"
        if self.clear_screen:
            # ANSI: clear screen, cursor home
            text = "\033[2J\033[H" + text
        self.stream.write(text)
        self.stream.flush()

    def announce(self, message: str):
        self.stream.write(message + "\n")
        self.stream.flush()

def format_row(symbol: str, entry: Union[MinuteBar, BarState]) -> str:
    if isinstance(entry, MinuteBar):
        return (
            f"{symbol:<5} | ${entry.open:>10.2f} | ${entry.low:>10.2f} | ${entry.high:>10.2f} | ${entry.close:>10.2f} | "
            f"{entry.percent_change:>7.2f}% | {entry.volatility:>9.2f}% | ${entry.spread:>6.2f} | {entry.sample_count:>7}"
        )

    mark = "ERR" if entry == BarState.ERROR else "--"
    return (
        f"{symbol:<5} | ${mark:>10} | ${mark:>10} | ${mark:>10} | ${mark:>10} | "
        f"{mark:>7} | {mark:>9} | ${mark:>6} | {0:>7}"
    )
