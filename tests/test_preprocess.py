import numpy as np
import pytest

from rgbdgen.core.contracts import Resample
from rgbdgen.core.device_image import DeviceImage
from rgbdgen.core.errors import ConfigurationError
from rgbdgen.depth.preprocess import (
    Preprocessor,
    adjust_inference_size,
    lanczos_table,
    nearest_indices,
)


@pytest.mark.parametrize("requested, expected", [
    (518, 518), (520, 518), (1024, 1022), (256, 252), (224, 224), (14, 14), (13, 14), (1, 14),
])
def test_adjust_inference_size(requested, expected):
    assert adjust_inference_size(requested) == expected


def test_end_to_end_tensor_shape_and_range(backend, gradient_image):
    src = gradient_image(256, 256)
    pre = Preprocessor(backend, 224)
    tensor = backend.to_host(pre.run(DeviceImage.from_array(backend, src), channel_swap=False))

    assert tensor.shape == (1, 3, 224, 224)
    assert tensor.dtype == np.float32
    assert tensor.min() >= 0.0
    assert tensor.max() <= 1.0
    assert tensor[0, 0, 0, 0] == pytest.approx(src[0, 0, 0] / 255.0, abs=1e-6)
    assert tensor[0, 2, 0, 0] == pytest.approx(64 / 255.0, abs=1e-6)


def test_channel_swap_exchanges_red_and_blue(backend, gradient_image):
    src = gradient_image(64, 48)
    image = DeviceImage.from_array(backend, src)
    pre = Preprocessor(backend, 28)

    plain = backend.to_host(pre.run(image, channel_swap=False)).copy()
    swapped = backend.to_host(pre.run(image, channel_swap=True)).copy()

    np.testing.assert_array_equal(plain[0, 0], swapped[0, 2])
    np.testing.assert_array_equal(plain[0, 2], swapped[0, 0])
    np.testing.assert_array_equal(plain[0, 1], swapped[0, 1])


def test_nearest_indices_cover_source():
    idx = nearest_indices(256, 224)
    assert idx[0] == 0
    assert idx[-1] == 255
    assert np.all(np.diff(idx) >= 0)


def test_nearest_indices_border_crops_symmetrically():
    idx = nearest_indices(100, 10, border=0.2)
    assert idx[0] >= 10
    assert idx[-1] <= 89
    assert abs((idx[0] - 10) - (89 - idx[-1])) <= 1


def test_lanczos_weights_are_normalized():
    indices, weights = lanczos_table(100, 42)
    assert indices.shape == weights.shape
    np.testing.assert_allclose(weights.sum(axis=1), 1.0, atol=1e-5)
    assert indices.min() >= 0
    assert indices.max() <= 99


def test_lanczos_identity_scale_reproduces_source():
    # Same size: the centre tap lands exactly on each source pixel
    indices, weights = lanczos_table(20, 20)
    centre = weights.shape[1] // 2
    np.testing.assert_allclose(weights[:, centre], 1.0, atol=1e-6)
    np.testing.assert_array_equal(indices[:, centre], np.arange(20))


def test_lanczos_path_stays_in_unit_range(backend, gradient_image):
    src = gradient_image(90, 70)
    pre = Preprocessor(backend, 42, resample=Resample.LANCZOS)
    tensor = backend.to_host(pre.run(DeviceImage.from_array(backend, src)))
    assert tensor.shape == (1, 3, 42, 42)
    assert tensor.min() >= 0.0
    assert tensor.max() <= 1.0


def test_tables_rebuilt_only_on_source_change(backend, gradient_image):
    pre = Preprocessor(backend, 28)
    image = DeviceImage.from_array(backend, gradient_image(40, 30))
    pre.run(image)
    tables = pre._ix
    pre.run(image)
    assert pre._ix is tables

    pre.run(DeviceImage.from_array(backend, gradient_image(50, 30)))
    assert pre._ix is not tables


def test_size_floored_to_patch_multiple(backend):
    pre = Preprocessor(backend, 60)
    assert pre.size == 56
    assert pre.tensor.shape == (1, 3, 56, 56)


def test_invalid_border_rejected(backend):
    with pytest.raises(ConfigurationError):
        Preprocessor(backend, 28, border=1.0)
