"""
Finger-on-lens detector.

With the torch on and a fingertip pressed over lens and flash, the sampled
region is lit through tissue and comes out:
  - Bright in the red channel (light scattered through blood).
  - Strongly red-dominant: blood absorbs green far more than red.

A bare lens looking at an ordinary scene (including a phone or monitor
screen) gives roughly equal red and green levels, so requiring red to be
several times green rejects it even when the scene is bright.

This check gates the extractor so history is only fed while the finger
is in place.
"""

from __future__ import annotations

from .constants import FINGER_RED_DOMINANCE, FINGER_RED_THRESHOLD
from .frame import BrightnessSample


class FingerDetector:
    """
    Heuristic detector: is the camera lens covered by a finger?

    Parameters
    ----------
    red_threshold:
        Mean red intensity (0 – 255) that must be exceeded.  Default: 60.
    red_dominance:
        Factor by which mean red must exceed mean green.  Default: 3.0.
        Both comparisons are strict, so boundary values count as
        "no finger".
    """

    def __init__(
        self,
        red_threshold: float = FINGER_RED_THRESHOLD,
        red_dominance: float = FINGER_RED_DOMINANCE,
    ) -> None:
        self.red_threshold = red_threshold
        self.red_dominance = red_dominance

    def is_finger(self, sample: BrightnessSample) -> bool:
        """Return *True* if *sample* looks like a finger covering the lens."""
        bright_enough = sample.red > self.red_threshold
        red_dominant = sample.red > sample.green * self.red_dominance
        return bright_enough and red_dominant
