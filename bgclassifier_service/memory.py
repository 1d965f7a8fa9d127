"""
Periodic memory reclamation for the long-running service.

Torch keeps freed blocks in its caching allocators and Python may hold on to
reference cycles between collections. `MemoryReclaimer.reclaim` forces both to
let go, on a fixed timer and after every Nth inference, and logs live tensor
counts before and after so growth is visible in the logs.
"""

from __future__ import annotations

from dataclasses import dataclass
import gc
import logging
import threading
from typing import Optional

import torch

from .inference import INFERENCE_LOCK

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryStats:
    tensors: int
    bytes: int


@dataclass(frozen=True)
class ReclaimReport:
    before: MemoryStats
    after: MemoryStats


def live_tensor_stats() -> MemoryStats:
    """Count tensors reachable by the garbage collector and their storage bytes."""
    count = 0
    total = 0
    for obj in gc.get_objects():
        if torch.is_tensor(obj):
            count += 1
            total += obj.element_size() * obj.nelement()
    return MemoryStats(tensors=count, bytes=total)


def _release_allocator_caches() -> None:
    if torch.cuda.is_available() and torch.cuda.is_initialized():
        torch.cuda.empty_cache()
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        torch.mps.empty_cache()


class MemoryReclaimer:
    """
    Runs `reclaim()` every `interval_seconds` and after every
    `every_n_inferences` completed inferences. A value of 0 disables the
    corresponding trigger. Never touches the loaded model.
    """

    def __init__(
        self,
        interval_seconds: float = 60.0,
        every_n_inferences: int = 100,
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.every_n_inferences = every_n_inferences
        self._lock = lock if lock is not None else INFERENCE_LOCK
        self._count_lock = threading.Lock()
        self._inferences = 0
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.last_report: Optional[ReclaimReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def inferences(self) -> int:
        return self._inferences

    def reclaim(self) -> None:
        # Waits for an in-flight forward pass instead of preempting it.
        with self._lock:
            before = live_tensor_stats()
            gc.collect()
            _release_allocator_caches()
            after = live_tensor_stats()
            self.runs += 1
            self.last_report = ReclaimReport(before=before, after=after)
        logger.info(
            "Memory reclaim #%d: tensors %d -> %d, bytes %d -> %d",
            self.runs,
            before.tensors,
            after.tensors,
            before.bytes,
            after.bytes,
        )

    def record_inference(self) -> None:
        """Count a completed inference and trigger a reclaim every Nth call."""
        with self._count_lock:
            self._inferences += 1
            due = self.every_n_inferences > 0 and self._inferences % self.every_n_inferences == 0
        if not due:
            return
        if self.running:
            self._wake.set()
        else:
            self.reclaim()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(target=self._run, name="memory-reclaimer", daemon=True)
        self._thread.start()
        logger.info(
            "Memory reclaimer started (interval=%ss, every %d inferences)",
            self.interval_seconds,
            self.every_n_inferences,
        )

    def stop(self, timeout: float = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        self._wake.set()
        thread.join(timeout)
        self._thread = None
        logger.info("Memory reclaimer stopped")

    def _run(self) -> None:
        timeout = self.interval_seconds if self.interval_seconds > 0 else None
        while not self._stop.is_set():
            self._wake.wait(timeout)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.reclaim()
            except Exception:  # noqa: BLE001
                logger.exception("Memory reclaim failed")
