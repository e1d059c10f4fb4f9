"""
Append-only session event log.
"""

import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import List, Optional

MAX_ENTRIES = 1000


class SessionLogger:
    """
    Writes `[timestamp] - EVENT - details` lines to the session log.

    The file keeps everything; the in-memory copy keeps the most recent
    max_entries lines.
    """

    def __init__(self, log_path: Optional[Path] = None, echo: bool = False, max_entries: int = MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.log_path = Path(log_path) if log_path else None
        self.echo = echo
        self.entries = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def __call__(self, event: str, details: str = ""):
        self.log(event, details)

    def log(self, event: str, details: str = ""):
        """Append an entry to the session log."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log_entry = f"[{timestamp}] - {event}"
        if details:
            log_entry += f" - {details}"

        with self._lock:
            self.entries.append(log_entry)
            if self.log_path is not None:
                try:
                    with open(self.log_path, 'a', encoding='utf-8') as f:
                        f.write(log_entry + "\n")
                except OSError:
                    # the in-memory copy is kept
                    pass
        if self.echo:
            print(log_entry)

    def events(self) -> List[str]:
        """Return the event names still held in memory, in order."""
        with self._lock:
            return [line.split(" - ")[1] for line in self.entries]
