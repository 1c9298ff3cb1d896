"""
Shared fixtures: synthetic frames, a controllable clock and a fake capture
device that records every hardware call instead of touching a camera.
"""

from __future__ import annotations

import threading
from typing import List, Optional

import numpy as np
import pytest

from pulse_meter.camera import CaptureDevice
from pulse_meter.capture_service import CaptureService
from pulse_meter.frame import Frame


def build_frame(red: float, green: float = 10, blue: float = 10,
                width: int = 64, height: int = 48) -> Frame:
    """Uniform BGRA frame."""
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:, :, 0] = blue
    pixels[:, :, 1] = green
    pixels[:, :, 2] = red
    pixels[:, :, 3] = 255
    return Frame(pixels, width=width, height=height)


def triangle(k: int, period: int = 24, base: int = 100, slope: int = 5) -> int:
    """Integer triangle wave: ``base`` at the troughs, one sharp apex per period."""
    phase = k % period
    return base + slope * min(phase, period - phase)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeDevice(CaptureDevice):
    """Records hardware calls in ``events``; tests push frames by hand."""

    name = "fake"

    def __init__(self, torch: bool = True, torch_error: bool = False) -> None:
        super().__init__()
        self.events: List[str] = []
        self._torch = torch
        self._torch_error = torch_error
        self._on_frame = None
        self._on_end = None
        self._lock = threading.Lock()

    def _record(self, event: str) -> None:
        with self._lock:
            self.events.append(event)

    def open(self, fps: int = 30) -> None:
        self.fps = fps
        self._record("open")

    def close(self) -> None:
        self._record("close")

    @property
    def is_streaming(self) -> bool:
        return self._on_frame is not None

    def start_streaming(self, on_frame, on_end=None) -> None:
        self._record("start")
        self._on_frame = on_frame
        self._on_end = on_end

    def stop_streaming(self) -> None:
        self._record("stop")
        self._on_frame = None

    @property
    def has_torch(self) -> bool:
        return self._torch

    def set_torch(self, on: bool, level: float = 1.0) -> None:
        if self._torch_error:
            raise RuntimeError("torch busy")
        self._record("torch_on" if on else "torch_off")

    def push(self, frame: Frame) -> None:
        if self._on_frame is not None:
            self._on_frame(frame)

    def die(self) -> None:
        """Simulate the stream ending without a stop request."""
        on_end, self._on_frame = self._on_end, None
        if on_end is not None:
            on_end()


class DeviceFinder:
    """Discovery stand-in returning one device and counting calls."""

    def __init__(self, device: Optional[CaptureDevice]) -> None:
        self.device = device
        self.calls = 0

    def __call__(self, fps: int) -> Optional[CaptureDevice]:
        self.calls += 1
        if self.device is not None:
            self.device.open(fps)
        return self.device


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def finder(device) -> DeviceFinder:
    return DeviceFinder(device)


@pytest.fixture
def capture(finder):
    service = CaptureService(discover=finder)
    yield service
    service.shutdown()


@pytest.fixture
def feed(capture, device):
    """
    Push one frame through the device and wait until it was processed.
    Pending control commands (a queued start) run first.
    """

    def _feed(frame: Frame) -> None:
        capture.wait_idle(timeout=5)
        device.push(frame)
        capture.call_on_delivery_thread(lambda: None).result(timeout=5)

    return _feed
