"""
Session-scoped user overrides.
URLs the user chose to visit despite a warning. Lives only as long as the
process; never written to storage.
"""

import threading
from typing import Iterator, Set


class SessionOverrideStore:
    def __init__(self):
        self._urls: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, url: str):
        with self._lock:
            self._urls.add(url)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._urls

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(sorted(self._urls))

    def clear(self):
        with self._lock:
            self._urls.clear()
