"""
Per-frame PPG signal extractor.

One :class:`SignalExtractor` is fed every delivered camera frame.  For each
frame it samples a small centred patch, decides whether a finger covers
the lens, and, while one does, appends the red average to a rolling
history and reports session progress.  Every 30 processed frames it runs
the peak detector over the history.

All mutable state is owned by the frame-delivery thread: the capture
service calls :meth:`SignalExtractor.process_frame` from its single
delivery worker, and the session controller routes :meth:`reset`,
:meth:`stop` and :meth:`get_average_heart_rate` through that same worker.
Nothing here takes a lock.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

import numpy as np

from .constants import (
    HISTORY_CAPACITY,
    PEAK_INTERVAL,
    SAMPLE_REGION,
    SAMPLE_STEP,
    SESSION_SECONDS,
    SETTLING_SECONDS,
)
from .finger_detector import FingerDetector
from .frame import BrightnessSample, Frame
from .signal_processor import PeakDetector

logger = logging.getLogger(__name__)


def sample_brightness(
    frame: Frame,
    region: int = SAMPLE_REGION,
    step: int = SAMPLE_STEP,
) -> BrightnessSample:
    """
    Average red and green over a sparse grid in the frame centre.

    The grid covers a square of side ``min(region, width, height)`` and
    reads every *step*-th pixel along both axes, which keeps the cost
    fixed no matter how large the sensor image is.
    """
    side = min(region, frame.width, frame.height)
    if side <= 0:
        return BrightnessSample(red=0.0, green=0.0)
    x0 = (frame.width - side) // 2
    y0 = (frame.height - side) // 2
    patch = frame.pixels()[y0:y0 + side:step, x0:x0 + side:step]
    # BGRA: channel 1 = green, channel 2 = red
    green = float(np.mean(patch[:, :, 1], dtype=np.float64))
    red = float(np.mean(patch[:, :, 2], dtype=np.float64))
    return BrightnessSample(red=red, green=green)


class SignalExtractor:
    """
    Stateful frame consumer producing live heart-rate estimates.

    Parameters
    ----------
    on_heart_rate:
        Called with every accepted BPM estimate (int), including those
        produced during the settling period.
    on_progress:
        Called on every processed frame with ``min(elapsed / 30 s, 1.0)``.
    on_finger_detected:
        Called on every frame with the finger-presence flag.
    clock:
        Monotonic time source in seconds.  Injected by tests.

    Callbacks run on the delivery thread and must not block.
    """

    def __init__(
        self,
        on_heart_rate: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_finger_detected: Optional[Callable[[bool], None]] = None,
        finger_detector: Optional[FingerDetector] = None,
        peak_detector: Optional[PeakDetector] = None,
        session_seconds: float = SESSION_SECONDS,
        settling_seconds: float = SETTLING_SECONDS,
        history_capacity: int = HISTORY_CAPACITY,
        peak_interval: int = PEAK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_heart_rate = on_heart_rate
        self.on_progress = on_progress
        self.on_finger_detected = on_finger_detected

        self.finger_detector = finger_detector or FingerDetector()
        self.peak_detector = peak_detector or PeakDetector()
        self.session_seconds = session_seconds
        self.settling_seconds = settling_seconds
        self.peak_interval = peak_interval
        self._clock = clock

        self._history: Deque[float] = deque(maxlen=history_capacity)
        self._valid_readings: List[int] = []
        self._frame_count = 0
        self._start_time: Optional[float] = None
        self._active = False
        self._session = 0

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def reset(self) -> int:
        """
        Clear history and readings, restart the session clock and start
        accepting frames.

        Returns the new session number, which the callbacks can be matched
        against to tell sessions apart.
        """
        self._frame_count = 0
        self._history.clear()
        self._valid_readings.clear()
        self._start_time = self._clock()
        self._active = True
        self._session += 1
        logger.debug("Extractor reset for session %d", self._session)
        return self._session

    def stop(self) -> None:
        """Ignore frames until the next :meth:`reset`."""
        self._active = False

    def get_average_heart_rate(self) -> int:
        """Integer mean of the settled readings, 0 if there are none."""
        if not self._valid_readings:
            return 0
        return sum(self._valid_readings) // len(self._valid_readings)

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def process_frame(self, frame: Frame) -> None:
        """Consume one frame.  No-op while inactive."""
        if not self._active:
            return

        sample = sample_brightness(frame)
        finger = self.finger_detector.is_finger(sample)
        if self.on_finger_detected is not None:
            self.on_finger_detected(finger)

        # Lifting the finger pauses the session; it does not restart it.
        if not finger:
            return

        self._history.append(sample.red)

        elapsed = self._clock() - self._start_time
        if self.on_progress is not None:
            self.on_progress(min(elapsed / self.session_seconds, 1.0))

        if self._frame_count % self.peak_interval == 0:
            self._update_heart_rate(elapsed)

        self._frame_count += 1

    def _update_heart_rate(self, elapsed: float) -> None:
        bpm = self.peak_detector.estimate(self._history)
        if bpm is None:
            return
        if elapsed > self.settling_seconds:
            self._valid_readings.append(bpm)
        logger.debug(
            "Estimate %d BPM at %.1fs (%d samples, settled=%s)",
            bpm, elapsed, len(self._history), elapsed > self.settling_seconds,
        )
        # Published even while settling so the live readout moves early.
        if self.on_heart_rate is not None:
            self.on_heart_rate(bpm)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def session(self) -> int:
        """Number of the current (or last) session."""
        return self._session

    @property
    def history(self) -> Tuple[float, ...]:
        return tuple(self._history)

    @property
    def valid_readings(self) -> Tuple[int, ...]:
        return tuple(self._valid_readings)
