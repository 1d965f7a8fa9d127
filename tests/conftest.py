import json
import math
from io import BytesIO
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pytest
import torch
from PIL import Image

REMOVE = "Odstranit pozadí"
KEEP = "Ponechat pozadí"


class TinyClassifier(torch.nn.Module):
    """NHWC image -> per-channel mean -> linear -> softmax."""

    def __init__(self, num_classes: int = 2, probs: Optional[Sequence[float]] = None):
        super().__init__()
        self.fc = torch.nn.Linear(3, num_classes)
        if probs is not None:
            with torch.no_grad():
                self.fc.weight.zero_()
                self.fc.bias.copy_(torch.tensor([math.log(p) for p in probs]))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        features = x.mean(dim=[1, 2])
        return torch.softmax(self.fc(features), dim=-1)


@pytest.fixture
def make_model_dir():
    """Write `model.pt` + `metadata.json` into a directory and return it."""

    def _make(
        directory: Path,
        labels: Sequence[str] = (REMOVE, KEEP),
        num_classes: Optional[int] = None,
        probs: Optional[Sequence[float]] = None,
        scripted: bool = True,
        metadata: Optional[dict] = None,
    ) -> Path:
        torch.manual_seed(0)
        directory.mkdir(parents=True, exist_ok=True)
        model = TinyClassifier(num_classes or len(labels), probs=probs).eval()
        if scripted:
            torch.jit.script(model).save(str(directory / "model.pt"))
        else:
            torch.save(model, directory / "model.pt")
        payload = metadata if metadata is not None else {"labels": list(labels), "imageSize": 224}
        (directory / "metadata.json").write_text(json.dumps(payload), encoding="utf-8")
        return directory

    return _make


@pytest.fixture
def encode_image():
    def _encode(image: Image.Image, fmt: str = "PNG") -> bytes:
        buf = BytesIO()
        image.save(buf, format=fmt)
        return buf.getvalue()

    return _encode


@pytest.fixture
def noise_image():
    def _noise(width: int, height: int, mode: str = "RGB") -> Image.Image:
        rng = np.random.default_rng(0)
        channels = len(mode)
        data = rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)
        return Image.fromarray(data)

    return _noise
