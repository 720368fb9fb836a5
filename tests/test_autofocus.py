import numpy as np
import pytest

from rgbdgen.core.contracts import AutoFocusConfig
from rgbdgen.core.errors import ConfigurationError
from rgbdgen.depth.autofocus import (
    HISTOGRAM_BINS,
    AutoFocus,
    centre_weights,
    find_peaks,
    focus_from_histogram,
    smooth_histogram,
)


def test_centre_weights_fall_off():
    w = centre_weights(64, 64)
    assert w[32, 32] == pytest.approx(1.0, abs=0.05)
    assert w[0, 0] == pytest.approx(0.1, abs=1e-6)
    assert w.min() >= 0.1


def test_smoothing_preserves_flat_histogram():
    hist = np.full(HISTOGRAM_BINS, 7.0)
    np.testing.assert_allclose(smooth_histogram(hist), 7.0)


def triangle(hist, centre, height):
    hist[centre - 2:centre + 3] += height * np.array([0.2, 0.6, 1.0, 0.6, 0.2])


def test_single_peak_is_focus():
    hist = np.zeros(HISTOGRAM_BINS)
    triangle(hist, 100, 5000.0)
    result = focus_from_histogram(hist)
    assert result.focus_depth == pytest.approx(100 / 255)


def test_close_maxima_merge_into_one_peak():
    smoothed = np.zeros(HISTOGRAM_BINS)
    smoothed[50] = 500.0
    smoothed[55] = 800.0
    peaks = find_peaks(smoothed)
    assert peaks == [(55, 800.0)]


def test_two_peaks_weighted_by_height():
    hist = np.zeros(HISTOGRAM_BINS)
    triangle(hist, 60, 3000.0)
    triangle(hist, 180, 1000.0)
    result = focus_from_histogram(hist)
    expected = (60 * 3 + 180 * 1) / (4 * 255)
    assert result.focus_depth == pytest.approx(expected, rel=1e-3)
    assert 0.5 < result.confidence < 1.0


def test_no_peaks_falls_back_to_tallest_bin():
    hist = np.zeros(HISTOGRAM_BINS)
    hist[0] = 50.0
    result = focus_from_histogram(hist)
    assert result.confidence == 0.5


def test_disabled_autofocus_leaves_depth(backend):
    af = AutoFocus(backend, AutoFocusConfig(enabled=False))
    depth = np.linspace(1, 2, 64, dtype=np.float32).reshape(8, 8)
    before = depth.copy()
    assert af.apply(depth) is None
    np.testing.assert_array_equal(depth, before)


def test_remap_keeps_range_and_invalid_pixels(backend):
    af = AutoFocus(backend, AutoFocusConfig(enabled=True, strength=1.0))
    rng = np.random.default_rng(0)
    depth = (rng.random((32, 32)) * 4 + 1).astype(np.float32)
    depth[0, 0] = 0.0
    lo, hi = float(depth.min()), float(depth.max())

    result = af.apply(depth)
    assert result is not None
    assert depth[0, 0] == 0.0
    assert depth.min() >= lo - 1e-5
    assert depth.max() <= hi + 1e-5


def test_flat_frame_untouched(backend):
    af = AutoFocus(backend, AutoFocusConfig(enabled=True))
    depth = np.full((8, 8), 2.0, dtype=np.float32)
    assert af.apply(depth) is None
    assert np.all(depth == 2.0)


def test_strength_validated():
    with pytest.raises(ConfigurationError):
        AutoFocusConfig(strength=1.5)
