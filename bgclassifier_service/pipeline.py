"""
High-level classification pipeline.

`predict_image` is the main entry point used by both the HTTP API and the
local test script. It keeps orchestration simple:
bytes in -> preprocessing -> classifier -> weighted decision -> result out.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import config
from .decision import PredictionResult, decide
from .inference import infer
from .memory import MemoryReclaimer
from .model_loader import ModelStore, get_model_store
from .preprocessing import preprocess

logger = logging.getLogger(__name__)


def predict_image(
    image_bytes: bytes,
    store: Optional[ModelStore] = None,
    reclaimer: Optional[MemoryReclaimer] = None,
    settings: Optional[config.Settings] = None,
) -> PredictionResult:
    """
    Full pipeline from raw image bytes to a `PredictionResult`.

    Raises:
        NotReadyError: when the model has not been loaded.
        ImageDecodeError: when the bytes are not a decodable image.
        InferenceError: when the forward pass fails.
        LabelMismatchError: when the labels lack the remove/keep classes.
    """
    store = store or get_model_store()
    model = store.get()

    # No local name for the tensor: `infer` owns it and frees it before returning.
    probabilities = infer(model, preprocess(image_bytes, device=model.device))
    if reclaimer is not None:
        reclaimer.record_inference()

    if settings is not None:
        return decide(probabilities, remove_label=settings.remove_label, keep_label=settings.keep_label)
    return decide(probabilities)
