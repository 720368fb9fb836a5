"""
Edge- and motion-aware temporal depth filter.

Per pixel, the filter estimates how much to trust the newest depth frame
(confidence = max of an edge score and a motion score) and then either
passes the raw value through or replaces it with a similarity-weighted
average over an adaptively sized slice of the rolling window, anchored on
the most stable recent frame (the keyframe).

Every stage is a whole-frame array program over the backend module and
writes into buffers allocated once per resolution.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np
from loguru import logger

from ..core.backend import Backend
from ..core.contracts import FilterParameters
from .rolling_window import RollingWindow

# Confidence above which the raw frame is emitted unchanged
FAST_PATH_CONFIDENCE = 0.8
# Maximum deviation from the raw value at zero confidence
MAX_DEVIATION = 0.02

EDGE_FRAMES = 10
MOTION_FRAMES = 10
KEYFRAME_CANDIDATES = 10
CONSISTENCY_FRAMES = 4
MAX_HISTORY = 15
BASE_HISTORY = 5

CURRENT_EDGE_GAIN = 1.5
DIAGONAL_MOTION_GAIN = 0.8
DIAGONAL_MOTION_FRAMES = 3
GRADIENT_MOTION_GAIN = 0.5
GRADIENT_RATIO_CAP = 5.0
GRADIENT_EPS = 0.001

LOW_CONFIDENCE = 0.5
KEYFRAME_WEIGHT = 3.0
KEYFRAME_BONUS = 1.5
KEYFRAME_RADIUS = 2
SPATIAL_BOOST_FRAMES = 2
GRADIENT_FALLBACK = 0.3

NEIGHBORS_8 = [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if (dx, dy) != (0, 0)]
NEIGHBORS_9 = [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1)]
DIAGONALS = [(-1, -1), (1, -1), (-1, 1), (1, 1)]


class TemporalFilter:
    """
    Temporal filter bound to one inference resolution.

    Usage:
        filt = TemporalFilter(backend, 518, 518)
        window.add_frame(raw)
        filt.apply(window, out)
    """

    def __init__(self, backend: Backend, width: int, height: int,
                 params: Optional[FilterParameters] = None):
        """
        Allocate the workspace.

        Args:
            backend: Array backend the window lives on
            width: Inference width
            height: Inference height
            params: Filter scalars (shared, mutable at runtime)
        """
        self.backend = backend
        self.xp = backend.xp
        self.width = width
        self.height = height
        self.params = params if params is not None else FilterParameters()

        shape = (height, width)
        self._grads = backend.zeros((MAX_HISTORY,) + shape)
        self._instability = backend.empty((KEYFRAME_CANDIDATES,) + shape)
        self._key_index = backend.zeros(shape, np.intp)
        self._key_offset = backend.empty(shape, np.intp)

        self._edge = backend.empty(shape)
        self._motion = backend.empty(shape)
        self._conf = backend.empty(shape)
        self._consistency = backend.empty(shape)
        self._key_depth = backend.empty(shape)
        self._adaptive_delta = backend.empty(shape)
        self._adaptive_sigma = backend.empty(shape)
        self._history_len = backend.empty(shape)
        self._wsum = backend.empty(shape)
        self._wtot = backend.empty(shape)
        self._wsq = backend.empty(shape)
        self._fw = backend.empty(shape)
        self._boost = backend.empty(shape)
        self._boost_count = backend.empty(shape)
        self._nd = backend.empty(shape)
        self._t1, self._t2, self._t3, self._t4, self._t5 = (backend.empty(shape) for _ in range(5))

        self._m1, self._m2, self._m3 = (backend.empty(shape, bool) for _ in range(3))
        self._active = backend.empty(shape, bool)
        self._low_conf = backend.empty(shape, bool)

        logger.debug(f"TemporalFilter workspace allocated for {width}x{height}")

    @property
    def confidence(self):
        """Per-pixel confidence of the last ``apply`` call."""
        return self._conf

    @property
    def edge(self):
        return self._edge

    @property
    def motion(self):
        return self._motion

    @property
    def keyframe_index(self):
        return self._key_index

    @property
    def gradient_consistency(self):
        return self._consistency

    def apply(self, window: RollingWindow, out):
        """
        Filter the newest frame of ``window`` into ``out`` (H, W) float32.

        Pixels whose raw depth is 0 produce 0; pixels with confidence above
        ``FAST_PATH_CONFIDENCE`` reproduce the raw value exactly.
        """
        xp = self.xp
        d0 = window.frame(0)

        self._temporal_gradients(window)
        self._edge_score(window, d0)
        self._motion_score(window, d0)
        xp.maximum(self._edge, self._motion, out=self._conf)
        self._select_keyframe(window)
        self._gradient_consistency()
        self._weighted_average(window, d0, out)

        xp.greater(self._conf, FAST_PATH_CONFIDENCE, out=self._m1)
        xp.copyto(out, d0, where=self._m1)
        xp.equal(d0, 0, out=self._m1)
        xp.copyto(out, 0.0, where=self._m1)
        return out

    # ===== helpers =====

    def _accumulate_max(self, acc, d0, nb, weight: float) -> None:
        """acc = max(acc, weight * |d0 - nb|) where nb > 0."""
        xp = self.xp
        t1 = self._t1
        xp.subtract(d0, nb, out=t1)
        xp.abs(t1, out=t1)
        xp.multiply(t1, weight, out=t1)
        xp.greater(nb, 0, out=self._m1)
        xp.multiply(t1, self._m1, out=t1)
        xp.maximum(acc, t1, out=acc)

    def _gradient_ratio(self, t: int):
        """
        Compare the temporal gradient at age ``t`` with the current one.

        Returns (diff, ratio): |G(t) - G(0)| and that difference relative to
        the smaller gradient magnitude, capped. On return ``_m2`` marks
        pixels where both gradients are non-zero and ``_m3`` pixels where
        the ratio is defined (smaller magnitude above GRADIENT_EPS).
        """
        xp = self.xp
        g0 = self._grads[0]
        gt = self._grads[t]
        diff, smaller, ratio = self._t3, self._t4, self._t5

        xp.subtract(gt, g0, out=diff)
        xp.abs(diff, out=diff)
        xp.abs(gt, out=smaller)
        xp.abs(g0, out=ratio)
        xp.minimum(smaller, ratio, out=smaller)

        xp.not_equal(gt, 0, out=self._m2)
        xp.not_equal(g0, 0, out=self._m3)
        xp.logical_and(self._m2, self._m3, out=self._m2)
        xp.greater(smaller, GRADIENT_EPS, out=self._m3)
        xp.logical_and(self._m3, self._m2, out=self._m3)

        xp.maximum(smaller, GRADIENT_EPS, out=smaller)
        xp.divide(diff, smaller, out=ratio)
        xp.minimum(ratio, GRADIENT_RATIO_CAP, out=ratio)
        return diff, ratio

    # ===== STEP 1: temporal gradients =====

    def _temporal_gradients(self, window: RollingWindow) -> None:
        """G(t) = F(t+1) - F(t) where both are valid, else 0."""
        xp = self.xp
        for t in range(MAX_HISTORY):
            g = self._grads[t]
            cur = window.frame(t)
            nxt = window.frame(t + 1)
            xp.subtract(nxt, cur, out=g)
            xp.greater(cur, 0, out=self._m1)
            xp.greater(nxt, 0, out=self._m2)
            xp.logical_and(self._m1, self._m2, out=self._m1)
            xp.multiply(g, self._m1, out=g)

    # ===== STEP 2: edge score =====

    def _edge_score(self, window: RollingWindow, d0) -> None:
        xp = self.xp
        edge = self._edge
        edge.fill(0)

        for dx, dy in NEIGHBORS_8:
            self._accumulate_max(edge, d0, window.neighbor(0, dx, dy), CURRENT_EDGE_GAIN)

        for t in range(1, EDGE_FRAMES):
            w = math.exp(-t / self.params.temporal_decay)
            for dx, dy in NEIGHBORS_9:
                self._accumulate_max(edge, d0, window.neighbor(t, dx, dy), w)

        xp.multiply(edge, 1.0 / self.params.edge_threshold, out=edge)
        xp.minimum(edge, 1.0, out=edge)

    # ===== STEP 3: motion score =====

    def _motion_score(self, window: RollingWindow, d0) -> None:
        xp = self.xp
        motion = self._motion
        motion.fill(0)
        depth_diff = self._t2

        for t in range(1, MOTION_FRAMES):
            w = math.exp(-t / self.params.temporal_decay)
            ft = window.frame(t)

            xp.subtract(ft, d0, out=depth_diff)
            xp.abs(depth_diff, out=depth_diff)

            # Gradient disagreement: capped ratio, raw difference when the
            # gradients are too small for a ratio, 0 when either is missing
            diff, ratio = self._gradient_ratio(t)
            xp.multiply(diff, self._m2, out=diff)
            xp.copyto(diff, ratio, where=self._m3)
            xp.multiply(diff, GRADIENT_MOTION_GAIN, out=diff)
            xp.add(diff, 1.0, out=diff)

            xp.multiply(depth_diff, diff, out=depth_diff)
            xp.multiply(depth_diff, w, out=depth_diff)
            xp.greater(ft, 0, out=self._m1)
            xp.multiply(depth_diff, self._m1, out=depth_diff)
            xp.maximum(motion, depth_diff, out=motion)

            if t < DIAGONAL_MOTION_FRAMES:
                for dx, dy in DIAGONALS:
                    self._accumulate_max(motion, d0, window.neighbor(t, dx, dy),
                                         w * DIAGONAL_MOTION_GAIN)

        xp.multiply(motion, 1.0 / self.params.motion_threshold, out=motion)
        xp.multiply(motion, motion, out=motion)
        xp.minimum(motion, 1.0, out=motion)

    # ===== STEP 4: keyframe =====

    def _select_keyframe(self, window: RollingWindow) -> None:
        """Pick, per pixel, the recent frame that differs least from its neighbours in time."""
        xp = self.xp
        count = self._t2

        for t in range(KEYFRAME_CANDIDATES):
            inst = self._instability[t]
            inst.fill(0)
            count.fill(0)
            ft = window.frame(t)

            for nt in (t - 1, t + 1):
                if not 0 <= nt < KEYFRAME_CANDIDATES:
                    continue
                fn = window.frame(nt)
                xp.subtract(ft, fn, out=self._t1)
                xp.abs(self._t1, out=self._t1)
                xp.greater(fn, 0, out=self._m1)
                xp.multiply(self._t1, self._m1, out=self._t1)
                xp.add(inst, self._t1, out=inst)
                xp.add(count, self._m1, out=count)

            xp.greater(count, 0, out=self._m2)
            xp.greater(ft, 0, out=self._m3)
            xp.logical_and(self._m2, self._m3, out=self._m2)

            xp.maximum(count, 1.0, out=count)
            xp.divide(inst, count, out=inst)
            # Older candidates must be clearly more stable to win
            xp.multiply(inst, 1.0 + 0.1 * t, out=inst)
            xp.logical_not(self._m2, out=self._m2)
            xp.copyto(inst, np.inf, where=self._m2)

        xp.argmin(self._instability, axis=0, out=self._key_index)

        key_depth = self._key_depth
        key_depth.fill(0)
        for t in range(KEYFRAME_CANDIDATES):
            xp.equal(self._key_index, t, out=self._m1)
            xp.copyto(key_depth, window.frame(t), where=self._m1)

    # ===== STEP 5: gradient consistency =====

    def _gradient_consistency(self) -> None:
        """exp(-2 * var/(0.01 + |mean|)) of the non-zero recent gradients; 1 when undecided."""
        xp = self.xp
        gsum, gsq, n, tmp = self._t1, self._t2, self._t3, self._t4
        gc = self._consistency
        gsum.fill(0)
        gsq.fill(0)
        n.fill(0)

        for t in range(CONSISTENCY_FRAMES):
            g = self._grads[t]
            xp.add(gsum, g, out=gsum)
            xp.multiply(g, g, out=tmp)
            xp.add(gsq, tmp, out=gsq)
            xp.not_equal(g, 0, out=self._m1)
            xp.add(n, self._m1, out=n)

        xp.greater_equal(n, 2, out=self._m2)
        xp.less(self._conf, LOW_CONFIDENCE, out=self._m3)
        xp.logical_and(self._m2, self._m3, out=self._m2)

        xp.maximum(n, 1.0, out=n)
        xp.divide(gsum, n, out=gsum)
        xp.divide(gsq, n, out=gsq)
        xp.multiply(gsum, gsum, out=tmp)
        xp.subtract(gsq, tmp, out=gsq)
        xp.maximum(gsq, 0.0, out=gsq)

        xp.abs(gsum, out=tmp)
        xp.add(tmp, 0.01, out=tmp)
        xp.divide(gsq, tmp, out=gsq)
        xp.multiply(gsq, -1.0 / 0.5, out=gsq)
        xp.exp(gsq, out=gc)

        xp.logical_not(self._m2, out=self._m2)
        xp.copyto(gc, 1.0, where=self._m2)

    # ===== STEP 6: weighted average =====

    def _weighted_average(self, window: RollingWindow, d0, out) -> None:
        xp = self.xp
        p = self.params
        edge, motion, conf, gc = self._edge, self._motion, self._conf, self._consistency
        wsum, wtot, wsq = self._wsum, self._wtot, self._wsq
        t1, t2 = self._t1, self._t2

        # Similarity tolerances widen at edges and under motion
        adelta, asigma = self._adaptive_delta, self._adaptive_sigma
        xp.multiply(edge, 0.5, out=adelta)
        xp.add(adelta, 1.0, out=adelta)
        xp.multiply(adelta, p.similarity_delta, out=adelta)
        xp.multiply(motion, 0.5, out=asigma)
        xp.add(asigma, 1.0, out=asigma)
        xp.multiply(asigma, p.similarity_sigma, out=asigma)

        # Keyframe anchor
        xp.subtract(1.0, conf, out=t1)
        xp.multiply(t1, KEYFRAME_WEIGHT, out=t1)
        xp.multiply(t1, gc, out=t1)
        xp.multiply(self._key_depth, t1, out=wsum)
        xp.copyto(wtot, t1)
        xp.multiply(wsum, self._key_depth, out=wsq)

        # Current frame
        xp.multiply(conf, 0.5, out=t1)
        xp.add(t1, 1.0, out=t1)
        xp.multiply(d0, t1, out=t2)
        xp.add(wsum, t2, out=wsum)
        xp.add(wtot, t1, out=wtot)
        xp.multiply(t2, d0, out=t2)
        xp.add(wsq, t2, out=wsq)

        # History length: shorter at high confidence
        hist = self._history_len
        xp.subtract(1.0, conf, out=hist)
        xp.multiply(hist, 10.0, out=hist)
        xp.multiply(hist, gc, out=hist)
        xp.add(hist, BASE_HISTORY, out=hist)
        xp.floor(hist, out=hist)
        xp.minimum(hist, MAX_HISTORY, out=hist)

        xp.less(conf, LOW_CONFIDENCE, out=self._low_conf)

        fw = self._fw
        for t in range(1, MAX_HISTORY):
            ft = window.frame(t)
            active = self._active
            xp.greater(hist, t, out=active)
            xp.not_equal(self._key_index, t, out=self._m1)
            xp.logical_and(active, self._m1, out=active)
            xp.greater(ft, 0, out=self._m1)
            xp.logical_and(active, self._m1, out=active)

            # Temporal decay damped by gradient disagreement
            _, ratio = self._gradient_ratio(t)
            xp.multiply(ratio, -0.5, out=fw)
            xp.exp(fw, out=fw)
            xp.logical_not(self._m3, out=self._m3)
            xp.copyto(fw, 1.0, where=self._m3)
            xp.multiply(fw, math.exp(-t / p.temporal_decay), out=fw)

            # Similarity to the current value
            dd = t2
            xp.subtract(ft, d0, out=dd)
            xp.abs(dd, out=dd)
            near, far = self._t3, self._t4
            xp.divide(dd, adelta, out=near)
            xp.multiply(near, -0.2, out=near)
            xp.add(near, 1.0, out=near)
            xp.subtract(dd, adelta, out=far)
            xp.divide(far, asigma, out=far)
            xp.negative(far, out=far)
            xp.exp(far, out=far)
            xp.multiply(far, 0.8, out=far)
            xp.less(dd, adelta, out=self._m2)
            xp.copyto(far, near, where=self._m2)
            xp.multiply(fw, far, out=fw)

            # Frames close to the keyframe
            xp.subtract(self._key_index, t, out=self._key_offset)
            xp.abs(self._key_offset, out=self._key_offset)
            xp.less_equal(self._key_offset, KEYFRAME_RADIUS, out=self._m1)
            xp.multiply(self._m1, KEYFRAME_BONUS - 1.0, out=self._t3)
            xp.add(self._t3, 1.0, out=self._t3)
            xp.multiply(fw, self._t3, out=fw)

            if t <= SPATIAL_BOOST_FRAMES:
                self._spatial_boost(window, t, d0, dd, fw)

            xp.multiply(fw, active, out=fw)
            xp.multiply(fw, ft, out=self._t3)
            xp.add(wsum, self._t3, out=wsum)
            xp.add(wtot, fw, out=wtot)
            xp.multiply(self._t3, ft, out=self._t3)
            xp.add(wsq, self._t3, out=wsq)

        # wtot >= 1 everywhere (current frame weight)
        xp.divide(wsum, wtot, out=out)

        # Variance fallback
        vt = p.variance_threshold
        std = t1
        xp.divide(wsq, wtot, out=std)
        xp.multiply(out, out, out=t2)
        xp.subtract(std, t2, out=std)
        xp.maximum(std, 0.0, out=std)
        xp.sqrt(std, out=std)
        xp.subtract(std, vt, out=std)
        xp.multiply(std, 1.0 / vt, out=std)
        xp.clip(std, 0.0, 1.0, out=std)
        xp.subtract(d0, out, out=t2)
        xp.multiply(t2, std, out=t2)
        xp.add(out, t2, out=out)

        # Gradient-consistency fallback
        xp.less(gc, GRADIENT_FALLBACK, out=self._m1)
        xp.multiply(gc, 1.0 / GRADIENT_FALLBACK, out=t1)
        xp.subtract(out, d0, out=t2)
        xp.multiply(t2, t1, out=t2)
        xp.add(d0, t2, out=t2)
        xp.copyto(out, t2, where=self._m1)

        # Anti-ghosting clamp around the raw value
        xp.subtract(1.0, conf, out=t1)
        xp.multiply(t1, MAX_DEVIATION, out=t1)
        xp.subtract(d0, t1, out=t2)
        xp.maximum(out, t2, out=out)
        xp.add(d0, t1, out=t2)
        xp.minimum(out, t2, out=out)

    def _spatial_boost(self, window: RollingWindow, t: int, d0, dd, fw) -> None:
        """Favour history whose neighbourhood agrees with the current value better than the pixel itself."""
        xp = self.xp
        r = min(self.params.neighbor_radius, window.pad)
        boost, count, nd = self._boost, self._boost_count, self._nd
        denom = self._t5
        boost.fill(0)
        count.fill(0)
        xp.add(dd, 0.001, out=denom)

        for dy in (-r, 0, r):
            for dx in (-r, 0, r):
                if dx == 0 and dy == 0:
                    continue
                nb = window.neighbor(t, dx, dy)
                xp.subtract(nb, d0, out=nd)
                xp.abs(nd, out=nd)
                xp.greater(nb, 0, out=self._m2)
                xp.less(nd, dd, out=self._m3)
                xp.logical_and(self._m2, self._m3, out=self._m2)
                xp.divide(nd, denom, out=nd)
                xp.subtract(1.0, nd, out=nd)
                xp.multiply(nd, self._m2, out=nd)
                xp.add(boost, nd, out=boost)
                xp.add(count, self._m2, out=count)

        xp.maximum(count, 1.0, out=count)
        xp.divide(boost, count, out=boost)
        xp.subtract(1.0, self._edge, out=nd)
        xp.multiply(boost, nd, out=boost)
        xp.multiply(boost, self._low_conf, out=boost)
        xp.add(boost, 1.0, out=boost)
        xp.multiply(fw, boost, out=fw)
