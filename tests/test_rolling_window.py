import numpy as np
import pytest

from rgbdgen.depth.rolling_window import CAPACITY, RollingWindow


def make_window(backend, w=4, h=3):
    return RollingWindow(backend, w, h)


def test_empty_window_samples_zero(backend):
    window = make_window(backend)
    assert window.sample(0, 1, 1) == 0.0
    assert window.sample(CAPACITY - 1, 0, 0) == 0.0
    assert len(window) == 0
    assert not window.is_warm


def test_ring_buffer_ages_after_25_frames(backend):
    window = make_window(backend)
    for k in range(25):
        window.add_frame(np.full((3, 4), float(k), dtype=np.float32))

    for age in range(CAPACITY):
        assert window.sample(age, 2, 1) == 24 - age

    assert window.cursor == 25 % CAPACITY
    assert window.is_warm
    assert len(window) == CAPACITY


def test_physical_slot_formula(backend):
    window = make_window(backend)
    for k in range(7):
        window.add_frame(np.full((3, 4), float(k), dtype=np.float32))
    for age in range(CAPACITY):
        assert window.slot_for_age(age) == (window.cursor - 1 - age + CAPACITY) % CAPACITY


def test_partially_filled_window_ages(backend):
    window = make_window(backend)
    for k in range(7):
        window.add_frame(np.full((3, 4), float(k + 1), dtype=np.float32))

    for age in range(7):
        assert window.sample(age, 1, 2) == 7 - age
    for age in range(7, CAPACITY):
        assert window.sample(age, 1, 2) == 0.0
    assert len(window) == 7
    assert not window.is_warm


def test_out_of_range_samples_return_zero(backend):
    window = make_window(backend)
    for _ in range(CAPACITY):
        window.add_frame(np.ones((3, 4), dtype=np.float32))

    assert window.sample(0, -1, 0) == 0.0
    assert window.sample(0, 0, -1) == 0.0
    assert window.sample(0, 4, 0) == 0.0
    assert window.sample(0, 0, 3) == 0.0
    assert window.sample(CAPACITY, 0, 0) == 0.0
    assert window.sample(-1, 0, 0) == 0.0
    assert window.sample(0, 3, 2) == 1.0


def test_neighbor_view_reads_zero_outside_frame(backend):
    window = make_window(backend)
    frame = np.arange(12, dtype=np.float32).reshape(3, 4) + 1
    window.add_frame(frame)

    right = backend.to_host(window.neighbor(0, 1, 0))
    np.testing.assert_array_equal(right[:, :3], frame[:, 1:])
    np.testing.assert_array_equal(right[:, 3], 0)

    up = backend.to_host(window.neighbor(0, 0, -1))
    np.testing.assert_array_equal(up[1:], frame[:-1])
    np.testing.assert_array_equal(up[0], 0)


def test_neighbor_offset_limited_to_border(backend):
    window = make_window(backend)
    with pytest.raises(ValueError):
        window.neighbor(0, window.pad + 1, 0)


def test_add_frame_rejects_wrong_shape(backend):
    window = make_window(backend)
    with pytest.raises(ValueError):
        window.add_frame(np.zeros((4, 3), dtype=np.float32))


def test_reset_discards_history(backend):
    window = make_window(backend)
    for _ in range(5):
        window.add_frame(np.ones((3, 4), dtype=np.float32))
    window.reset()
    assert window.frames_written == 0
    assert window.cursor == 0
    assert window.sample(0, 0, 0) == 0.0
