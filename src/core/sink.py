import io
import os
import csv
import threading
from src.core.models import BarRecord
from src.core.logger import logger

BAR_HEADER = [
    "Timestamp", "Symbol", "Open", "High", "Low", "Close",
    "Samples", "PercentChange", "Volatility", "Spread",
]

class PersistenceError(Exception):
    """A bar record could not be written to the bar log."""

class CsvBarSink:
    """Append-only CSV log of completed minute bars."""

    def __init__(self, path: str = "prices.csv"):
        self.path = path
        self._lock = threading.Lock()
        self._header_checked = False

    def append(self, record: BarRecord):
        with self._lock:
            try:
                self._ensure_header()
                line = self._format_row(record)
                # Single write per record: it either lands whole or not at all
                with open(self.path, "a", newline="", encoding="utf-8") as fh:
                    fh.write(line)
                    fh.flush()
            except OSError as e:
                raise PersistenceError(f"Error writing to CSV: {e}") from e

    def _ensure_header(self):
        if self._header_checked:
            return

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            with open(self.path, "a", newline="", encoding="utf-8") as fh:
                csv.writer(fh).writerow(BAR_HEADER)
            logger.info(f"Created bar log {self.path}")

        self._header_checked = True

    @staticmethod
    def _format_row(record: BarRecord) -> str:
        # Render through csv for quoting, then write the finished line in one go
        out = io.StringIO()
        csv.writer(out).writerow(record.to_row())
        return out.getvalue()
