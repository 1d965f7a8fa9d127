"""
Scoped ownership for per-call tensors.

Every tensor created while handling a single prediction is registered with a
`TensorScope`. Leaving the scope drops the scope's references, on the success
path and on the failure path alike. A process-wide ledger counts a tracked
tensor as released only once the tensor object has actually been freed, so
`ledger_snapshot().live` exposes any buffer still held elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import RLock
from typing import List, TypeVar
import weakref

import torch

T = TypeVar("T", bound=torch.Tensor)


@dataclass
class BufferLedger:
    acquired: int = 0
    released: int = 0

    @property
    def live(self) -> int:
        return self.acquired - self.released


_LEDGER = BufferLedger()
# Re-entrant: finalizers may run during a collection triggered inside `track`.
_LEDGER_LOCK = RLock()


def _mark_released() -> None:
    with _LEDGER_LOCK:
        _LEDGER.released += 1


def ledger_snapshot() -> BufferLedger:
    with _LEDGER_LOCK:
        return BufferLedger(acquired=_LEDGER.acquired, released=_LEDGER.released)


class TensorScope:
    """
    Context manager owning the tensors allocated within it.

    Usage::

        with TensorScope() as scope:
            x = scope.track(torch.zeros(3))
            y = scope.track(x * 2)
            result = y.tolist()
            del x, y
        # the scope no longer references x or y, even if the block raised

    Callers `del` their own names inside the block; the ledger only counts a
    tensor as released once nothing references it any more.
    """

    def __init__(self) -> None:
        self._tensors: List[torch.Tensor] = []
        self._closed = False

    def track(self, tensor: T) -> T:
        if self._closed:
            raise RuntimeError("TensorScope is already closed")
        with _LEDGER_LOCK:
            _LEDGER.acquired += 1
        weakref.finalize(tensor, _mark_released)
        self._tensors.append(tensor)
        return tensor

    def release(self) -> None:
        self._tensors.clear()
        self._closed = True

    def __len__(self) -> int:
        return len(self._tensors)

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
