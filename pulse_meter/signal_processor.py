"""
PPG peak-counting heart-rate estimator.

Algorithm
---------
1. The input is the rolling history of red-channel averages, one sample
   per frame at a fixed 30 fps.
2. Smooth it with a centred moving average (radius 2, i.e. 5 points; the
   window shrinks at the buffer edges instead of padding).
3. Take the mean of the smoothed series as the DC baseline.
4. Count interior strict local maxima that sit above the baseline,
   ignoring any maximum within 8 samples of the previously counted one.
5. BPM = peaks / (samples / fps) × 60, accepted only inside (40, 200).

Peak counting is used instead of a spectral estimate because a fingertip
over the torch gives a high-SNR waveform, and it is cheap enough to run
on the frame-delivery thread every second.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from scipy.signal import argrelextrema

from .constants import (
    BPM_HIGH,
    BPM_LOW,
    FRAME_RATE,
    MIN_HISTORY,
    PEAK_DEBOUNCE,
    SMOOTHING_RADIUS,
)

logger = logging.getLogger(__name__)


def smooth(signal: Sequence[float], radius: int = SMOOTHING_RADIUS) -> np.ndarray:
    """
    Centred moving average with edge-clipped windows.

    Each output point is the mean of the input point and up to *radius*
    neighbours on either side; near the edges fewer neighbours exist and
    the mean is taken over what is there.
    """
    x = np.asarray(signal, dtype=np.float64)
    n = x.size
    if n == 0:
        return x
    kernel = np.ones(2 * radius + 1)
    sums = np.convolve(np.pad(x, radius), kernel, mode="valid")
    counts = np.convolve(np.pad(np.ones(n), radius), kernel, mode="valid")
    return sums / counts


def count_peaks(smoothed: np.ndarray, debounce: int = PEAK_DEBOUNCE) -> int:
    """
    Count strict local maxima above the series mean.

    A maximum closer than or equal to *debounce* samples to the last
    counted one is dropped.
    """
    if smoothed.size < 3:
        return 0
    baseline = float(np.mean(smoothed))
    # mode="clip" makes the end points compare against themselves, so only
    # interior points can qualify.
    candidates = argrelextrema(smoothed, np.greater)[0]

    peaks = 0
    last_peak: Optional[int] = None
    for idx in candidates:
        if smoothed[idx] <= baseline:
            continue
        if last_peak is not None and idx - last_peak <= debounce:
            continue
        peaks += 1
        last_peak = int(idx)
    return peaks


def bpm_from_peaks(peaks: int, n_samples: int, fps: float = FRAME_RATE) -> float:
    """Convert a peak count over *n_samples* frames to beats per minute."""
    if n_samples <= 0:
        return 0.0
    duration = n_samples / fps
    return peaks / duration * 60.0


class PeakDetector:
    """
    Heart-rate estimator over a brightness history.

    Parameters
    ----------
    fps:
        Sampling rate of the history.  Must match the locked camera rate.
    min_history:
        Estimation is skipped unless the history is strictly longer than
        this (default 60 samples ≈ 2 s).
    smoothing_radius:
        Half-width of the moving-average window.
    debounce:
        Minimum index gap between two counted peaks.
    bpm_low, bpm_high:
        Exclusive bounds of the accepted BPM range.
    """

    def __init__(
        self,
        fps: float = FRAME_RATE,
        min_history: int = MIN_HISTORY,
        smoothing_radius: int = SMOOTHING_RADIUS,
        debounce: int = PEAK_DEBOUNCE,
        bpm_low: float = BPM_LOW,
        bpm_high: float = BPM_HIGH,
    ) -> None:
        self.fps = fps
        self.min_history = min_history
        self.smoothing_radius = smoothing_radius
        self.debounce = debounce
        self.bpm_low = bpm_low
        self.bpm_high = bpm_high

    def raw_bpm(self, history: Sequence[float]) -> Optional[float]:
        """
        Return the unfiltered BPM estimate, or *None* when the history is
        too short to try.
        """
        n = len(history)
        if n <= self.min_history:
            return None
        smoothed = smooth(history, self.smoothing_radius)
        peaks = count_peaks(smoothed, self.debounce)
        return bpm_from_peaks(peaks, n, self.fps)

    def estimate(self, history: Sequence[float]) -> Optional[int]:
        """
        Return the accepted BPM as an int, or *None* if the round was
        skipped or the estimate is outside ``(bpm_low, bpm_high)``.
        """
        bpm = self.raw_bpm(history)
        if bpm is None:
            return None
        if not self.bpm_low < bpm < self.bpm_high:
            logger.debug("Rejected estimate %.1f BPM over %d samples", bpm, len(history))
            return None
        return int(bpm)
