"""In-memory LRU cache of processed URL results"""

from collections import OrderedDict
from typing import Optional, Tuple

from loguru import logger

from .config import CACHE_MAX_SIZE

# (content, prefix) as returned by process_url
ProcessedResult = Tuple[str, str]


class ResultCache:
    """
    Least-recently-used cache keyed by URL, user agent and raw mode.

    All access happens on the event loop without awaiting, so no lock is
    needed.
    """

    def __init__(self, max_size: int = CACHE_MAX_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[str, ProcessedResult]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(url: str, user_agent: str, raw: bool) -> str:
        return f"{url}||{user_agent}||{str(raw).lower()}"

    def get(self, key: str) -> Optional[ProcessedResult]:
        if key not in self._entries:
            self.misses += 1
            return None
        # Move to end (most recently used)
        self._entries.move_to_end(key)
        self.hits += 1
        return self._entries[key]

    def set(self, key: str, value: ProcessedResult) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cached result {evicted}")
        self._entries[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
