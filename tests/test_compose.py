import numpy as np
import pytest

from rgbdgen.core.device_image import DeviceImage
from rgbdgen.depth.compose import FLAT_GREY, RGBDCompositor, depth_index


@pytest.fixture
def color(backend, gradient_image):
    return DeviceImage.from_array(backend, gradient_image(32, 24))


def compose(backend, depth, color, swap=False):
    comp = RGBDCompositor(backend)
    out = comp.compose(backend.upload(depth), color, channel_swap=swap)
    return comp, out.to_host()


def test_output_layout(backend, color):
    depth = np.linspace(1.0, 2.0, 14 * 14, dtype=np.float32).reshape(14, 14)
    _, out = compose(backend, depth, color)

    assert out.shape == (24, 64, 4)
    np.testing.assert_array_equal(out[:, :32], color.to_host())
    right = out[:, 32:]
    np.testing.assert_array_equal(right[..., 0], right[..., 1])
    np.testing.assert_array_equal(right[..., 1], right[..., 2])
    assert np.all(right[..., 3] == 255)


def test_min_maps_to_zero_and_max_to_255(backend, color):
    depth = np.full((14, 14), 3.0, dtype=np.float32)
    depth[0, 0] = 1.0
    depth[13, 13] = 9.0
    _, out = compose(backend, depth, color)
    right = out[:, 32:, 0]

    assert right[0, 0] == 0
    assert right[-1, -1] == 255
    assert right.min() == 0
    assert right.max() == 255


def test_normalized_values_stay_in_range(backend, color):
    rng = np.random.default_rng(0)
    depth = (rng.random((14, 14)) * 100 - 50).astype(np.float32)
    comp, out = compose(backend, depth, color)
    assert comp.last_range == pytest.approx((float(depth.min()), float(depth.max())))
    assert out[:, 32:, :3].min() == 0
    assert out[:, 32:, :3].max() == 255


def test_flat_frame_is_mid_grey(backend, color):
    depth = np.full((14, 14), 0.7, dtype=np.float32)
    _, out = compose(backend, depth, color)
    right = out[:, 32:]
    assert np.all(right[..., :3] == FLAT_GREY)
    assert np.all(right[..., 3] == 255)


def test_channel_swap_only_touches_colour_half(backend, color):
    depth = np.linspace(0.0, 1.0, 14 * 14, dtype=np.float32).reshape(14, 14)
    _, plain = compose(backend, depth, color)
    _, swapped = compose(backend, depth, color, swap=True)

    np.testing.assert_array_equal(plain[:, :32, 0], swapped[:, :32, 2])
    np.testing.assert_array_equal(plain[:, :32, 2], swapped[:, :32, 0])
    np.testing.assert_array_equal(plain[:, :32, 3], swapped[:, :32, 3])
    np.testing.assert_array_equal(plain[:, 32:], swapped[:, 32:])


def test_depth_index_nearest_upsampling():
    idx = depth_index(32, 14)
    assert idx[0] == 0
    assert idx[-1] == 13
    assert len(idx) == 32


def test_output_buffer_reused(backend, color):
    comp = RGBDCompositor(backend)
    depth = backend.upload(np.linspace(1, 2, 196, dtype=np.float32).reshape(14, 14))
    first = comp.compose(depth, color)
    second = comp.compose(depth, color)
    assert first is second
    assert first.data is second.data
