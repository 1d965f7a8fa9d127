import weakref

import numpy as np
import pytest
import torch
from PIL import Image

from bgclassifier_service.errors import ImageDecodeError
from bgclassifier_service.preprocessing import INPUT_SIZE, fill_resize, preprocess
from bgclassifier_service.tensor_scope import ledger_snapshot


def test_output_contract(encode_image, noise_image):
    tensor = preprocess(encode_image(noise_image(640, 120)))
    assert tuple(tensor.shape) == (1, INPUT_SIZE, INPUT_SIZE, 3)
    assert tensor.dtype == torch.float32
    assert float(tensor.min()) >= 0.0
    assert float(tensor.max()) <= 1.0


def test_fill_resize_stretches_without_crop_or_pad(noise_image):
    resized = fill_resize(noise_image(50, 400))
    assert resized.size == (INPUT_SIZE, INPUT_SIZE)


def test_values_are_scaled_by_255_only(encode_image, noise_image):
    image = noise_image(INPUT_SIZE, INPUT_SIZE)
    tensor = preprocess(encode_image(image))
    expected = np.asarray(image, dtype=np.float32) / 255.0
    np.testing.assert_allclose(tensor[0].numpy(), expected, rtol=0, atol=1e-7)


def test_uniform_colour_survives_resize(encode_image):
    image = Image.new("RGB", (37, 91), (255, 0, 51))
    tensor = preprocess(encode_image(image))
    pixel = tensor[0, 112, 112].tolist()
    assert pixel == pytest.approx([1.0, 0.0, 0.2], abs=1.5 / 255)


def test_idempotent_on_model_sized_image(noise_image):
    image = noise_image(INPUT_SIZE, INPUT_SIZE)
    resized = fill_resize(image)
    assert resized.size == image.size
    assert resized.mode == "RGB"
    assert np.array_equal(np.asarray(resized), np.asarray(image))


def test_alpha_is_dropped(encode_image, noise_image):
    tensor = preprocess(encode_image(noise_image(300, 200, mode="RGBA")))
    assert tensor.shape[-1] == 3


def test_greyscale_becomes_three_channels(encode_image):
    tensor = preprocess(encode_image(Image.new("L", (64, 64), 128)))
    assert tuple(tensor.shape) == (1, INPUT_SIZE, INPUT_SIZE, 3)
    assert float(tensor[0, 0, 0, 0]) == pytest.approx(128 / 255, abs=1 / 255)


def test_palette_image(encode_image, noise_image):
    palette = noise_image(120, 80).convert("P")
    tensor = preprocess(encode_image(palette))
    assert tuple(tensor.shape) == (1, INPUT_SIZE, INPUT_SIZE, 3)


def test_jpeg_input(encode_image, noise_image):
    tensor = preprocess(encode_image(noise_image(500, 333), fmt="JPEG"))
    assert tuple(tensor.shape) == (1, INPUT_SIZE, INPUT_SIZE, 3)


@pytest.mark.parametrize("payload", [b"", b"not an image at all", b"\x89PNG\r\n\x1a\n" + b"\x00" * 16])
def test_undecodable_input(payload):
    with pytest.raises(ImageDecodeError):
        preprocess(payload)


def test_truncated_image(encode_image, noise_image):
    data = encode_image(noise_image(256, 256))
    with pytest.raises(ImageDecodeError):
        preprocess(data[: len(data) // 2])


def test_intermediates_freed_while_output_is_held(encode_image, noise_image):
    before = ledger_snapshot()
    tensor = preprocess(encode_image(noise_image(100, 100)))
    after = ledger_snapshot()
    assert after.acquired > before.acquired
    assert after.live == before.live
    assert tensor._base is None


def test_output_is_not_retained(encode_image, noise_image):
    ref = weakref.ref(preprocess(encode_image(noise_image(100, 100))))
    assert ref() is None


def test_sixteen_bit_greyscale_is_rescaled(encode_image):
    image = Image.fromarray(np.full((64, 64), 32768, dtype=np.uint16))
    tensor = preprocess(encode_image(image))
    assert tuple(tensor.shape) == (1, INPUT_SIZE, INPUT_SIZE, 3)
    assert float(tensor[0, 10, 10, 0]) == pytest.approx(128 / 255, abs=1 / 255)
    assert float(tensor.max()) < 0.6


def test_sixteen_bit_extremes(encode_image):
    data = np.zeros((64, 64), dtype=np.uint16)
    data[:, 32:] = 65535
    tensor = preprocess(encode_image(Image.fromarray(data)))
    assert float(tensor[0, 100, 5, 0]) == pytest.approx(0.0, abs=1 / 255)
    assert float(tensor[0, 100, 218, 0]) == pytest.approx(1.0, abs=1 / 255)


def test_float_image_is_scaled(encode_image):
    image = Image.fromarray(np.full((32, 32), 0.5, dtype=np.float32))
    tensor = preprocess(encode_image(image, fmt="TIFF"))
    assert float(tensor[0, 0, 0, 1]) == pytest.approx(128 / 255, abs=1 / 255)
