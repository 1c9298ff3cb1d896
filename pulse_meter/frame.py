"""
Frame and brightness-sample data structures.

A :class:`Frame` wraps one camera pixel buffer in the fixed 4-byte BGRA
layout (B, G, R, A) with an explicit row stride, the way capture hardware
hands it over.  Rows may be padded, so pixel ``(x, y)`` lives at byte
``y * bytes_per_row + x * 4``.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

BYTES_PER_PIXEL = 4


@dataclass(frozen=True, eq=False)
class Frame:
    """
    Immutable BGRA pixel buffer.

    Parameters
    ----------
    data:
        Raw bytes (``bytes``, ``memoryview`` or a ``uint8`` array of any
        shape).  At least ``bytes_per_row * height`` bytes are required.
    width, height:
        Frame size in pixels.
    bytes_per_row:
        Row stride in bytes.  Defaults to ``width * 4`` (no padding).
    """

    data: np.ndarray
    width: int
    height: int
    bytes_per_row: int = 0

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Invalid frame size {self.width}x{self.height}")
        stride = self.bytes_per_row or self.width * BYTES_PER_PIXEL
        if stride < self.width * BYTES_PER_PIXEL:
            raise ValueError(
                f"bytes_per_row={stride} is smaller than width*4={self.width * BYTES_PER_PIXEL}"
            )
        if isinstance(self.data, np.ndarray):
            buf = np.ascontiguousarray(self.data).reshape(-1).view(np.uint8)
        else:
            buf = np.frombuffer(self.data, dtype=np.uint8)
        if buf.size < stride * self.height:
            raise ValueError(
                f"Buffer holds {buf.size} bytes, need {stride * self.height} "
                f"for {self.width}x{self.height} at stride {stride}"
            )
        buf = buf[: stride * self.height]
        buf.flags.writeable = False
        object.__setattr__(self, "data", buf)
        object.__setattr__(self, "bytes_per_row", stride)

    @classmethod
    def from_bgr(cls, image: np.ndarray) -> "Frame":
        """
        Build a BGRA frame from an OpenCV image.

        Accepts BGR (H × W × 3) or BGRA (H × W × 4) ``uint8`` arrays.
        """
        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise ValueError(f"Expected a BGR/BGRA image, got shape {image.shape}")
        if image.shape[2] == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
        image = np.ascontiguousarray(image, dtype=np.uint8)
        h, w = image.shape[:2]
        return cls(image, width=w, height=h)

    def pixels(self) -> np.ndarray:
        """Read-only ``(height, width, 4)`` view of the BGRA pixels."""
        rows = self.data.reshape(self.height, self.bytes_per_row)
        return rows[:, : self.width * BYTES_PER_PIXEL].reshape(
            self.height, self.width, BYTES_PER_PIXEL
        )


@dataclass(frozen=True)
class BrightnessSample:
    """Average red (the PPG signal) and green intensity of one frame."""

    red: float
    green: float
