import math

import numpy as np
import pytest

from rgbdgen.core.contracts import FilterParameters
from rgbdgen.depth.rolling_window import CAPACITY, RollingWindow
from rgbdgen.depth.temporal_filter import (
    FAST_PATH_CONFIDENCE,
    GRADIENT_FALLBACK,
    MAX_DEVIATION,
    TemporalFilter,
)

W, H = 16, 16


@pytest.fixture
def window(backend):
    return RollingWindow(backend, W, H)


@pytest.fixture
def temporal_filter(backend):
    return TemporalFilter(backend, W, H, FilterParameters())


def run(backend, temporal_filter, window):
    out = backend.zeros((H, W))
    temporal_filter.apply(window, out)
    return backend.to_host(out).copy()


def fill(window, frame, count=CAPACITY):
    for _ in range(count):
        window.add_frame(frame)


def load_history(window, values_by_age):
    """Write uniform frames so that age i holds values_by_age[i]."""
    for value in reversed(values_by_age):
        window.add_frame(np.full((H, W), value, dtype=np.float32))


def test_zero_depth_produces_zero(backend, temporal_filter, window):
    frame = np.full((H, W), 5.0, dtype=np.float32)
    fill(window, frame)
    holes = frame.copy()
    holes[4, 4] = 0.0
    holes[10, 2] = 0.0
    window.add_frame(holes)

    out = run(backend, temporal_filter, window)
    assert out[4, 4] == 0.0
    assert out[10, 2] == 0.0


def test_first_frame_passes_through(backend, temporal_filter, window):
    rng = np.random.default_rng(0)
    frame = (rng.random((H, W)) * 0.5 + 3.0).astype(np.float32)
    window.add_frame(frame)

    out = run(backend, temporal_filter, window)
    np.testing.assert_allclose(out, frame, atol=1e-5)


def test_idempotent_for_identical_history(backend, temporal_filter, window):
    rng = np.random.default_rng(1)
    frame = (rng.random((H, W)) * 2.0 + 1.0).astype(np.float32)
    fill(window, frame)

    first = run(backend, temporal_filter, window)
    window.add_frame(frame)
    second = run(backend, temporal_filter, window)
    np.testing.assert_array_equal(first, second)


def test_spike_takes_fast_path(backend, temporal_filter, window):
    stable = np.full((H, W), 5.0, dtype=np.float32)
    fill(window, stable)
    spiked = stable.copy()
    spiked[8, 8] = 50.0
    window.add_frame(spiked)

    out = run(backend, temporal_filter, window)
    conf = backend.to_host(temporal_filter.confidence)

    assert conf[8, 8] > FAST_PATH_CONFIDENCE
    assert out[8, 8] == 50.0
    # Every pixel either reproduces its raw value or stays within the clamp
    np.testing.assert_allclose(np.delete(out.ravel(), 8 * W + 8), 5.0, atol=1e-4)


def test_confidence_and_scores_in_unit_range(backend, temporal_filter, window):
    rng = np.random.default_rng(2)
    for _ in range(CAPACITY + 3):
        window.add_frame((rng.random((H, W)) * 20.0 + 0.1).astype(np.float32))

    run(backend, temporal_filter, window)
    for arr in (temporal_filter.confidence, temporal_filter.edge, temporal_filter.motion):
        host = backend.to_host(arr)
        assert host.min() >= 0.0
        assert host.max() <= 1.0


def test_output_never_strays_from_raw(backend, temporal_filter, window):
    rng = np.random.default_rng(3)
    for _ in range(CAPACITY + 5):
        window.add_frame((rng.random((H, W)) * 0.3 + 4.0).astype(np.float32))

    out = run(backend, temporal_filter, window)
    raw = backend.to_host(window.frame(0))
    assert np.all(np.abs(out - raw) <= MAX_DEVIATION + 1e-5)


def test_small_change_is_smoothed_toward_history(backend, temporal_filter, window):
    fill(window, np.full((H, W), 5.0, dtype=np.float32))
    current = np.full((H, W), 5.01, dtype=np.float32)
    window.add_frame(current)

    out = run(backend, temporal_filter, window)
    centre = out[H // 2, W // 2]
    assert centre < current[0, 0]
    assert centre >= current[0, 0] - MAX_DEVIATION - 1e-6


def test_keyframe_prefers_most_stable_frame(backend, temporal_filter, window):
    fill(window, np.full((H, W), 5.0, dtype=np.float32))
    window.add_frame(np.full((H, W), 5.01, dtype=np.float32))

    run(backend, temporal_filter, window)
    key = backend.to_host(temporal_filter.keyframe_index)
    # Ages 0 and 1 touch the changed frame; age 2 is the first fully stable one
    assert key[H // 2, W // 2] == 2


def test_parameters_are_live(backend, window):
    params = FilterParameters()
    temporal_filter = TemporalFilter(backend, W, H, params)
    fill(window, np.full((H, W), 5.0, dtype=np.float32))
    stepped = np.full((H, W), 5.0, dtype=np.float32)
    stepped[:, W // 2:] = 7.0
    window.add_frame(stepped)

    run(backend, temporal_filter, window)
    strict = backend.to_host(temporal_filter.edge).copy()

    params.edge_threshold = 10.0
    run(backend, temporal_filter, window)
    relaxed = backend.to_host(temporal_filter.edge)

    assert relaxed.max() < strict.max()


@pytest.mark.parametrize("current", [8.0, 20.0])
def test_motion_is_squared_depth_change(backend, temporal_filter, window, current):
    fill(window, np.full((H, W), 5.0, dtype=np.float32))
    window.add_frame(np.full((H, W), current, dtype=np.float32))
    run(backend, temporal_filter, window)

    p = temporal_filter.params
    delta = current - 5.0
    expected = min((math.exp(-1 / p.temporal_decay) * delta / p.motion_threshold) ** 2, 1.0)
    np.testing.assert_allclose(backend.to_host(temporal_filter.motion), expected, rtol=1e-5)


def test_motion_scaled_by_gradient_disagreement(backend, temporal_filter, window):
    # The previous frame dipped, so its gradient opposes the current one
    load_history(window, [8.5, 6.0] + [8.0] * (CAPACITY - 2))
    run(backend, temporal_filter, window)

    p = temporal_filter.params
    g0 = 6.0 - 8.5
    g1 = 8.0 - 6.0
    ratio = abs(g1 - g0) / min(abs(g0), abs(g1))
    delta = 8.5 - 6.0
    expected = min((math.exp(-1 / p.temporal_decay) * delta * (1 + 0.5 * ratio) / p.motion_threshold) ** 2, 1.0)
    np.testing.assert_allclose(backend.to_host(temporal_filter.motion), expected, rtol=1e-5)


def test_scattered_history_falls_back_to_raw(backend, window):
    # Stable recent frames; older frames scattered +-4 around the current value
    scattered = [9.0, 1.0, 1.0, 9.0, 9.0, 1.0, 1.0, 9.0]
    load_history(window, [5.0] * 5 + scattered + [5.0] * (CAPACITY - 13))
    params = FilterParameters(temporal_decay=5.0, edge_threshold=10.0, motion_threshold=8.0,
                              variance_threshold=5.0)
    temporal_filter = TemporalFilter(backend, W, H, params)

    deviations = []
    for threshold in (5.0, 2.5, 1.0, 0.5):
        params.variance_threshold = threshold
        out = run(backend, temporal_filter, window)
        deviations.append(float(np.abs(out - 5.0).max()))

    assert np.all(backend.to_host(temporal_filter.gradient_consistency) == 1.0)
    assert deviations[0] > 1e-3
    assert all(later <= earlier + 1e-7 for earlier, later in zip(deviations, deviations[1:]))
    assert deviations[-1] < 1e-5


def test_oscillating_history_falls_back_to_raw(backend, temporal_filter, window):
    load_history(window, [5.0 + 0.2 * (age % 2) for age in range(CAPACITY)])
    out = run(backend, temporal_filter, window)

    assert backend.to_host(temporal_filter.gradient_consistency).max() < GRADIENT_FALLBACK
    np.testing.assert_allclose(out, 5.0, atol=1e-3)


def test_steady_drift_is_smoothed(backend, temporal_filter, window):
    load_history(window, [5.0 + 0.05 * age for age in range(CAPACITY)])
    out = run(backend, temporal_filter, window)

    assert backend.to_host(temporal_filter.gradient_consistency).min() > GRADIENT_FALLBACK
    assert np.all(out - 5.0 > 0.01)
