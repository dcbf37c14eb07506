"""
Result Sink - append-only CSV log, one row per trial.

Column order is fixed:

    delay,bandwidth,filesize,transmission_ms,error

Each row is flushed and fsynced before the next trial starts, so a crash
after N trials keeps the first N rows.
"""

import csv
import logging
import os
from typing import List, Optional

from harness.models import ResultRecord

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["delay", "bandwidth", "filesize", "transmission_ms", "error"]


class ResultSink:
    """Appends ResultRecords to a CSV file"""

    def __init__(self, path: str):
        self.path = path
        self.rows_written = 0
        self._file = None
        self._writer = None

    def open(self) -> "ResultSink":
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        is_new = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        self._file = open(self.path, "a", newline="")
        self._writer = csv.writer(self._file, lineterminator="\n")
        if is_new:
            self._writer.writerow(RESULT_COLUMNS)
            self._sync()
        logger.info(f"Results: {self.path}")
        return self

    def record(self, record: ResultRecord):
        if self._writer is None:
            raise RuntimeError("ResultSink.record() called before open()")
        self._writer.writerow(record.as_row())
        self._sync()
        self.rows_written += 1

    def _sync(self):
        self._file.flush()
        os.fsync(self._file.fileno())

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None
            self._writer = None

    def __enter__(self) -> "ResultSink":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def read_rows(path: str) -> List[List[str]]:
    with open(path, newline="") as f:
        return list(csv.reader(f))


def render_table(path: str, rows: Optional[List[List[str]]] = None) -> str:
    """Space-aligned rendering of the CSV for the end-of-sweep printout"""
    rows = read_rows(path) if rows is None else rows
    if not rows:
        return ""
    widths = [0] * max(len(r) for r in rows)
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = []
    for row in rows:
        cells = [cell.ljust(widths[i]) for i, cell in enumerate(row)]
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines)
