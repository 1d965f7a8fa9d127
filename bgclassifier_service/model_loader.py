"""
Model loading utilities for the background classifier.

The loader:
 - loads the classifier from `<MODEL_PATH>/model.pt` (TorchScript first, a
   pickled `nn.Module` as fallback),
 - reads the class labels from `<MODEL_PATH>/metadata.json`,
 - checks the model output against the labels with a warm-up pass,
 - keeps a single shared instance for the lifetime of the process,
 - exposes `get_model_store()` for inference callers.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Optional, Sequence, Tuple

import torch

from .errors import ModelLoadError, NotReadyError
from .preprocessing import INPUT_SIZE
from .tensor_scope import TensorScope

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.pt"
METADATA_FILENAME = "metadata.json"


def resolve_device(preferred: Optional[str] = None) -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU unless a device is configured."""
    if preferred:
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


class ModelState(str, enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadedModel:
    handle: torch.nn.Module
    labels: Tuple[str, ...]
    device: torch.device
    model_path: Path


def _read_labels(metadata_path: Path) -> Tuple[str, ...]:
    if not metadata_path.is_file():
        raise ModelLoadError(f"Metadata file not found at {metadata_path}")
    try:
        metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ModelLoadError(f"Could not read metadata file {metadata_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"Metadata file {metadata_path} is not valid JSON: {exc}") from exc

    if not isinstance(metadata, dict):
        raise ModelLoadError("Metadata must be a JSON object")
    labels = metadata.get("labels")
    if not isinstance(labels, list) or not labels:
        raise ModelLoadError("Metadata must contain a non-empty 'labels' list")
    if not all(isinstance(label, str) for label in labels):
        raise ModelLoadError("Metadata 'labels' must contain only strings")

    image_size = metadata.get("imageSize")
    if image_size is not None and image_size != INPUT_SIZE:
        logger.warning(
            "Metadata declares imageSize=%s but the service always feeds %dx%d inputs",
            image_size,
            INPUT_SIZE,
            INPUT_SIZE,
        )
    return tuple(labels)


def _try_load_torchscript(model_path: Path, device: torch.device) -> torch.nn.Module:
    """Load a TorchScript model if possible."""
    return torch.jit.load(str(model_path), map_location=device)


def _load_pickled_module(model_path: Path, device: torch.device) -> torch.nn.Module:
    """Load a fully pickled `nn.Module`; bare state dicts carry no architecture."""
    checkpoint = torch.load(model_path, map_location=device, weights_only=False)
    if not isinstance(checkpoint, torch.nn.Module):
        raise ModelLoadError(
            f"Unsupported checkpoint format in {model_path}: expected TorchScript or a pickled nn.Module"
        )
    return checkpoint


def _load_handle(model_file: Path, device: torch.device) -> torch.nn.Module:
    if not model_file.is_file():
        raise ModelLoadError(f"Model file not found at {model_file}")

    try:
        logger.info("Attempting to load TorchScript model from %s", model_file)
        model = _try_load_torchscript(model_file, device)
    except Exception as script_error:  # noqa: BLE001
        logger.info("TorchScript load failed, falling back to pickled module. Error: %s", script_error)
        try:
            model = _load_pickled_module(model_file, device)
        except ModelLoadError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadError(f"Could not deserialize model {model_file}: {exc}") from exc

    model.eval()
    model.to(device)
    return model


def _check_output_dim(handle: torch.nn.Module, labels: Sequence[str], device: torch.device) -> None:
    """Run one all-zero warm-up pass and compare the output width to the labels."""
    try:
        with TensorScope() as scope, torch.inference_mode():
            dummy = scope.track(torch.zeros((1, INPUT_SIZE, INPUT_SIZE, 3), dtype=torch.float32, device=device))
            output = scope.track(handle(dummy))
            shape = tuple(output.shape)
            del dummy, output
    except Exception as exc:  # noqa: BLE001
        raise ModelLoadError(f"Warm-up forward pass failed: {exc}") from exc

    if len(shape) != 2 or shape[0] != 1:
        raise ModelLoadError(f"Model output must have shape (1, num_classes), got {shape}")
    if shape[1] != len(labels):
        raise ModelLoadError(
            f"Model produces {shape[1]} outputs but metadata lists {len(labels)} labels"
        )


class ModelStore:
    """
    Write-once holder for the classifier and its labels.

    `load` is called exactly once at startup; `get` fails fast with
    `NotReadyError` until then and never loads lazily.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._state = ModelState.UNLOADED
        self._model: Optional[LoadedModel] = None

    @property
    def state(self) -> ModelState:
        return self._state

    def load(self, model_path: Path | str, device: Optional[str] = None) -> LoadedModel:
        with self._lock:
            if self._state in (ModelState.READY, ModelState.LOADING):
                raise ModelLoadError(f"Model store is already {self._state.value}")
            self._state = ModelState.LOADING

        try:
            loaded = self._load(Path(model_path), resolve_device(device))
        except ModelLoadError:
            self._state = ModelState.FAILED
            raise
        except Exception as exc:  # noqa: BLE001
            self._state = ModelState.FAILED
            raise ModelLoadError(str(exc)) from exc

        self._model = loaded
        self._state = ModelState.READY
        logger.info("Model loaded from %s on device %s", loaded.model_path, loaded.device)
        logger.info("Classes: %s", list(loaded.labels))
        return loaded

    def _load(self, model_path: Path, device: torch.device) -> LoadedModel:
        if not model_path.is_dir():
            raise ModelLoadError(f"Model directory not found at {model_path}")
        labels = _read_labels(model_path / METADATA_FILENAME)
        handle = _load_handle(model_path / MODEL_FILENAME, device)
        _check_output_dim(handle, labels, device)
        return LoadedModel(handle=handle, labels=labels, device=device, model_path=model_path)

    def get(self) -> LoadedModel:
        model = self._model
        if self._state is not ModelState.READY or model is None:
            raise NotReadyError(f"Model not loaded (state: {self._state.value})")
        return model


_STORE = ModelStore()


def get_model_store() -> ModelStore:
    """Return the process-wide model store."""
    return _STORE
