"""Per-key locking without a single global lock."""

from __future__ import annotations

import threading
import zlib
from typing import List


class StripedLock:
    """Fixed pool of locks; a key always maps to the same stripe.

    Unrelated keys almost always land on different stripes, so traffic for
    one identifier does not serialize traffic for the others.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: object) -> threading.Lock:
        digest = zlib.crc32(str(key).encode("utf-8"))
        return self._locks[digest % len(self._locks)]
