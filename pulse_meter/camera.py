"""
Capture device backends.

A :class:`CaptureDevice` owns one physical camera and, once streaming,
pushes every captured image to a callback as a BGRA :class:`Frame` from
its own reader thread.  Two backends are provided:

* :class:`Picamera2Device` for Raspberry Pi camera modules, requesting
  ``XRGB8888`` which picamera2 lays out as B, G, R, X bytes.
* :class:`OpenCVDevice` wrapping ``cv2.VideoCapture`` (any webcam), which
  is handy for development on non-Pi hardware.

Neither exposes a torch; the capture service then measures without
illumination.  A backend for hardware that has one overrides
:attr:`CaptureDevice.has_torch` and :meth:`CaptureDevice.set_torch`.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator, Optional, Tuple

import cv2
import numpy as np

from .constants import FRAME_RATE
from .frame import Frame

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Try importing picamera2 (only available on Raspberry Pi OS)
# ---------------------------------------------------------------------------
try:
    from picamera2 import Picamera2
    _PICAMERA2_AVAILABLE = True
except ImportError:
    _PICAMERA2_AVAILABLE = False
    logger.debug("picamera2 not found – only the OpenCV backend is available.")

FrameCallback = Callable[[Frame], None]
EndCallback = Callable[[], None]

_MAX_NULL_STREAK = 10


class CaptureDevice:
    """
    Base class for camera backends.

    Subclasses implement ``_open``, ``_read_image`` and ``_release`` and may
    override ``_begin`` / ``_end`` for work done when streaming starts and
    stops.

    Parameters
    ----------
    resolution:
        (width, height) requested from the sensor.
    """

    name = "camera"

    def __init__(self, resolution: Tuple[int, int] = (640, 480)) -> None:
        self.resolution = resolution
        self.fps: int = FRAME_RATE
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, fps: int = FRAME_RATE) -> None:
        """
        Acquire the camera, lock its frame duration to ``1 / fps`` and
        select a 4-byte BGRA-compatible format.

        Raises
        ------
        RuntimeError
            If the device cannot be acquired.
        """
        self.fps = fps
        self._open()
        logger.info(
            "Camera opened – backend=%s resolution=%s fps=%d",
            self.name, self.resolution, self.fps,
        )

    def close(self) -> None:
        """Stop streaming and release the camera."""
        self.stop_streaming()
        self._release()
        logger.info("Camera closed – backend=%s", self.name)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_streaming(
        self,
        on_frame: FrameCallback,
        on_end: Optional[EndCallback] = None,
    ) -> None:
        """
        Start pushing frames to *on_frame* from a reader thread.

        *on_end* is called from the reader thread if the stream dies on its
        own (read failures or an error); it is not called after
        :meth:`stop_streaming`.
        """
        if self.is_streaming:
            return
        if self._thread is not None:
            # The previous reader died; release it before starting over.
            self.stop_streaming()
        self._begin()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._reader_loop,
            args=(on_frame, on_end),
            name=f"{self.name}-reader",
            daemon=True,
        )
        self._thread.start()

    def stop_streaming(self) -> None:
        """Stop the reader thread and wait for it to exit."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=2.0)
        if thread.is_alive():
            logger.warning("%s reader thread did not exit within 2 s", self.name)
        self._thread = None
        self._end()

    # ------------------------------------------------------------------
    # Illumination
    # ------------------------------------------------------------------

    @property
    def has_torch(self) -> bool:
        return False

    def set_torch(self, on: bool, level: float = 1.0) -> None:
        raise RuntimeError(f"{self.name} has no torch")

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    def _open(self) -> None:
        raise NotImplementedError

    def _read_image(self) -> Optional[np.ndarray]:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def _begin(self) -> None:
        pass

    def _end(self) -> None:
        pass

    def _reader_loop(
        self,
        on_frame: FrameCallback,
        on_end: Optional[EndCallback],
    ) -> None:
        null_streak = 0
        try:
            while not self._stop_event.is_set():
                image = self._read_image()
                if image is None:
                    null_streak += 1
                    if null_streak >= _MAX_NULL_STREAK:
                        logger.error(
                            "%s returned %d consecutive empty frames – stopping reader.",
                            self.name, _MAX_NULL_STREAK,
                        )
                        break
                    continue
                null_streak = 0
                on_frame(Frame.from_bgr(image))
        except Exception:
            logger.exception("%s reader failed", self.name)

        if not self._stop_event.is_set() and on_end is not None:
            on_end()


class Picamera2Device(CaptureDevice):
    """Raspberry Pi camera module via picamera2."""

    name = "picamera2"

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        camera_num: int = 0,
    ) -> None:
        super().__init__(resolution)
        self.camera_num = camera_num
        self._cam: "Picamera2 | None" = None

    def _open(self) -> None:
        cam = Picamera2(self.camera_num)
        w, h = self.resolution
        # Few buffers so a slow consumer sees fresh frames rather than a queue.
        config = cam.create_video_configuration(
            main={"size": (w, h), "format": "XRGB8888"},
            buffer_count=2,
        )
        cam.configure(config)
        frame_duration = int(1_000_000 / self.fps)   # microseconds
        try:
            cam.set_controls({
                "FrameDurationLimits": (frame_duration, frame_duration),
            })
        except Exception as exc:                         # noqa: BLE001
            logger.warning("Could not set FrameDurationLimits: %s", exc)
        self._cam = cam

    def _begin(self) -> None:
        self._cam.start()
        # Let auto-exposure settle; the first frames are often black.
        for _ in range(8):
            self._cam.capture_array("main")

    def _end(self) -> None:
        self._cam.stop()

    def _read_image(self) -> Optional[np.ndarray]:
        image = self._cam.capture_array("main")
        if image is None:
            logger.warning("capture_array returned None.")
        return image

    def _release(self) -> None:
        if self._cam is not None:
            self._cam.close()
            self._cam = None


class OpenCVDevice(CaptureDevice):
    """Any camera reachable through ``cv2.VideoCapture``."""

    name = "opencv"

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        camera_index: int = 0,
    ) -> None:
        super().__init__(resolution)
        self.camera_index = camera_index
        self._cap: Optional[cv2.VideoCapture] = None

    def _open(self) -> None:
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        # Keep only the newest frame in the driver queue.
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        actual_fps = cap.get(cv2.CAP_PROP_FPS)
        if actual_fps and abs(actual_fps - self.fps) > 0.5:
            logger.warning(
                "Camera reports %.1f fps instead of %d; BPM will be scaled wrongly.",
                actual_fps, self.fps,
            )
        self._cap = cap

    def _read_image(self) -> Optional[np.ndarray]:
        ok, image = self._cap.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        return image

    def _release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def candidate_devices(
    resolution: Tuple[int, int] = (640, 480),
    camera_index: int = 0,
) -> Iterator[CaptureDevice]:
    """Yield backends in order of preference, without opening them."""
    if _PICAMERA2_AVAILABLE:
        yield Picamera2Device(resolution, camera_num=camera_index)
    yield OpenCVDevice(resolution, camera_index=camera_index)


def discover_rear_camera(
    fps: int = FRAME_RATE,
    resolution: Tuple[int, int] = (640, 480),
    camera_index: int = 0,
) -> Optional[CaptureDevice]:
    """
    Open the first backend that works.

    Returns the opened device, or *None* when no camera could be acquired.
    """
    for device in candidate_devices(resolution, camera_index):
        try:
            device.open(fps)
        except Exception:
            logger.warning("Backend %s unavailable", device.name, exc_info=True)
            continue
        return device
    return None
