"""In-memory coalescing of chat message counts ahead of the database."""
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Iterable, Optional, Tuple

from aura_rewards.clock import Clock
from aura_rewards.services.storage import PersistentStore

logger = logging.getLogger(__name__)

BufferKey = Tuple[str, str, date]  # (identity, group, day)


@dataclass
class BufferedCount:
    count: int
    last_update: datetime


class ActivityBuffer:
    """
    Accumulates per-(user, chat) message counts and commits them in batches.

    ``record()`` never touches the database. Counts are written by ``flush()``,
    which runs every ``flush_interval`` seconds once ``start()`` has been called
    and as soon as ``max_keys`` distinct keys are buffered. Counts still
    buffered when the process dies are lost; ``stop()`` flushes one last time.

    ``on_groups_flushed`` receives the chat ids touched by each flush, which is
    where the weekly ranking is recomputed.
    """

    def __init__(self, store: PersistentStore, clock: Optional[Clock] = None, flush_interval: float = 30.0,
                 max_keys: int = 100, on_groups_flushed: Optional[Callable[[Iterable[str]], None]] = None):
        self.store = store
        self.clock = clock or store.clock
        self.flush_interval = flush_interval
        self.max_keys = max_keys
        self.on_groups_flushed = on_groups_flushed

        self._entries: Dict[BufferKey, BufferedCount] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def pending(self, identity: str, group: str, day: Optional[date] = None) -> int:
        """Count buffered for the key that has not been flushed yet."""
        key = (identity, group, day or self.clock.today())
        with self._lock:
            entry = self._entries.get(key)
            return entry.count if entry else 0

    def record(self, identity: str, group: str) -> None:
        key = (identity, group, self.clock.today())
        now = self.clock.stamp()
        with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry.count += 1
                entry.last_update = now
            else:
                self._entries[key] = BufferedCount(1, now)
            full = len(self._entries) >= self.max_keys

        if full:
            logger.info(f"Activity buffer reached {self.max_keys} keys, flushing")
            if self.running:
                self._wake.set()
            else:
                self.flush()

    def _drain(self) -> Dict[BufferKey, BufferedCount]:
        # Swap and clear under one lock so no increment lands between read and clear
        with self._lock:
            drained, self._entries = self._entries, {}
        return drained

    def _merge_back(self, key: BufferKey, entry: BufferedCount) -> None:
        with self._lock:
            live = self._entries.get(key)
            if live:
                live.count += entry.count
                live.last_update = max(live.last_update, entry.last_update)
            else:
                self._entries[key] = entry

    def flush(self) -> int:
        """Write every buffered count to the database. Returns the number of keys written."""
        with self._flush_lock:
            drained = self._drain()
            if not drained:
                return 0

            written = 0
            groups = set()
            for (identity, group, day), entry in drained.items():
                try:
                    self.store.add_activity(identity, group, entry.count, day, entry.last_update)
                except Exception as e:
                    logger.warning(f"Failed to flush {entry.count} messages for {identity} in {group}, re-buffering: {e}")
                    self._merge_back((identity, group, day), entry)
                    continue
                written += 1
                groups.add(group)

            logger.info(f"Flushed {written}/{len(drained)} activity entries")
            if groups and self.on_groups_flushed:
                try:
                    self.on_groups_flushed(sorted(groups))
                except Exception as e:
                    logger.error(f"Ranking update after flush failed: {e}")
            return written

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="activity-flush", daemon=True)
        self._thread.start()
        logger.info(f"Activity buffer started, flushing every {self.flush_interval}s")

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wake.wait(self.flush_interval)
            self._wake.clear()
            if self._stopping.is_set():
                break
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Periodic activity flush failed: {e}")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the flush thread and write whatever is still buffered."""
        self._stopping.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self.flush()
        logger.info("Activity buffer stopped")
