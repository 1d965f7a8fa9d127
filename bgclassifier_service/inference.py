"""
Forward pass over a preprocessed tensor.

All tensors touched by a call (the input, the raw output, the host copy) are
owned by a `TensorScope` and released before `infer` returns. The model handle
itself is never released here.
"""

from __future__ import annotations

import logging
from threading import Lock
import traceback
from typing import Dict, Optional

import torch

from .errors import InferenceError
from .model_loader import LoadedModel
from .tensor_scope import TensorScope

logger = logging.getLogger(__name__)

# One forward pass at a time; the memory reclaimer takes the same lock so it
# only ever runs between passes.
INFERENCE_LOCK = Lock()


def infer(model: Optional[LoadedModel], tensor: torch.Tensor) -> Dict[str, float]:
    """
    Run the classifier once and map its output row onto the label names.

    Raises:
        InferenceError: when the model is not loaded, the forward pass fails
            or the output width does not match the labels.
    """
    if model is None or model.handle is None:
        raise InferenceError("Model not loaded")

    failure: Optional[Exception] = None
    with TensorScope() as scope:
        scope.track(tensor)
        output = values = None
        try:
            with INFERENCE_LOCK, torch.inference_mode():
                output = scope.track(model.handle(tensor))
                values = scope.track(output.detach().reshape(output.shape[0], -1)[0].to("cpu", torch.float32))
                probabilities = values.tolist()
        except Exception as exc:  # noqa: BLE001
            # Frames below this one would otherwise keep the input alive.
            traceback.clear_frames(exc.__traceback__)
            failure = exc
        tensor = output = values = None

    if failure is not None:
        raise InferenceError(f"Forward pass failed: {failure}") from failure
    if len(probabilities) != len(model.labels):
        raise InferenceError(
            f"Model returned {len(probabilities)} values for {len(model.labels)} labels"
        )
    return {label: float(p) for label, p in zip(model.labels, probabilities)}
