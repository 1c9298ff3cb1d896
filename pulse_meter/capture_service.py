"""
Camera capture service.

Owns the capture device for the whole process and delivers its frames to a
single consumer.

Threads
-------
control queue
    One single-worker executor shared by every :class:`CaptureService`.
    ``configure``, ``start``, ``stop`` and ``shutdown`` are queued on it and
    run strictly in submission order, so quickly leaving and re-entering a
    measurement can never interleave device operations or leave the torch
    on.
delivery thread
    One single-worker executor per service.  Every frame is handed to the
    consumer here, one at a time.  Work that must not race with frame
    processing (resetting or stopping the consumer) is submitted to the
    same worker through :meth:`CaptureService.call_on_delivery_thread`.
reader thread
    Owned by the :class:`~pulse_meter.camera.CaptureDevice`.  It only
    hands frames over; if the delivery thread is still busy with the
    previous frame the new one is dropped, so a slow consumer falls
    behind by skipping frames rather than by queueing them.

Ownership
---------
The consumer passed to the latest ``configure`` owns the device.  When
another consumer takes over, capture is stopped and the previous owner's
``on_released`` callback runs on the control queue; the same happens to
the current owner when the stream dies on its own.  ``stop(owner)``
from a consumer that no longer owns the device leaves it alone.
"""

from __future__ import annotations

import atexit
import functools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Protocol

from .camera import CaptureDevice, discover_rear_camera
from .constants import FRAME_RATE
from .frame import Frame

logger = logging.getLogger(__name__)


class FrameConsumer(Protocol):
    def process_frame(self, frame: Frame) -> None: ...


DeviceFinder = Callable[[int], Optional[CaptureDevice]]
ReleaseCallback = Callable[[], None]


class CaptureService:
    """
    Capture device lifecycle and frame delivery.

    Parameters
    ----------
    discover:
        Called once, with the frame rate, on first configuration.  Must
        return an opened :class:`CaptureDevice` or *None*.
    fps:
        Frame rate to lock the device to.
    """

    # The hardware is process-wide, so all instances share one control queue.
    _control = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture-control")

    _shared: Optional["CaptureService"] = None
    _shared_lock = threading.Lock()

    @classmethod
    def shared(cls) -> "CaptureService":
        """Return the process-wide service, creating it on first use."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
                atexit.register(cls._shared.shutdown)
            return cls._shared

    def __init__(
        self,
        discover: DeviceFinder = discover_rear_camera,
        fps: int = FRAME_RATE,
    ) -> None:
        self.fps = fps
        self._discover = discover
        self._delivery = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="frame-delivery"
        )
        self._delivery_slot = threading.Semaphore(1)

        # Written only on the control queue.
        self._device: Optional[CaptureDevice] = None
        self._configured = False
        self._running = False
        self._stream = 0

        # Swapped on the control queue, read on the delivery thread.
        self._consumer: Optional[FrameConsumer] = None
        self._on_released: Optional[ReleaseCallback] = None

        # Approximate counters written on the reader and delivery threads
        # without locking; a frame still in flight when capture stops is
        # not included in the logged totals.
        self.delivered_frames = 0
        self.dropped_frames = 0

    # ------------------------------------------------------------------
    # Public API – every call returns immediately with a Future
    # ------------------------------------------------------------------

    def configure(
        self,
        consumer: FrameConsumer,
        on_released: Optional[ReleaseCallback] = None,
    ) -> Future:
        """
        Acquire and set up the device on first call; afterwards only switch
        frame delivery to *consumer*.

        *on_released* is called on the control queue when *consumer* loses
        the device to another consumer or the stream ends unexpectedly.
        """
        return self._submit(self._configure, consumer, on_released)

    def start(self) -> Future:
        """Start frame delivery and turn the torch on."""
        return self._submit(self._start)

    def stop(self, owner: Optional[FrameConsumer] = None) -> Future:
        """
        Turn the torch off, then stop frame delivery.

        With *owner* given, nothing happens unless it is still the current
        consumer.
        """
        return self._submit(self._stop, owner)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop capture, release the device and the delivery thread."""
        try:
            self._submit(self._close).result(timeout)
        except RuntimeError:
            # Interpreter exit: the control worker is gone, nothing can race.
            self._run_command(self._close)
        self._delivery.shutdown(wait=False)
        with self._shared_lock:
            if CaptureService._shared is self:
                CaptureService._shared = None

    def call_on_delivery_thread(self, fn: Callable, *args) -> Future:
        """Run *fn* on the delivery thread, ordered with frame processing."""
        return self._delivery.submit(fn, *args)

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Block until every control command queued so far has run."""
        self._control.submit(lambda: None).result(timeout)

    @property
    def is_configured(self) -> bool:
        return self._configured

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def device(self) -> Optional[CaptureDevice]:
        return self._device

    # ------------------------------------------------------------------
    # Control-queue commands
    # ------------------------------------------------------------------

    def _submit(self, command: Callable, *args) -> Future:
        return self._control.submit(self._run_command, command, *args)

    @staticmethod
    def _run_command(command: Callable, *args) -> None:
        try:
            command(*args)
        except Exception:
            logger.exception("Capture command %s failed", command.__name__)

    def _configure(
        self,
        consumer: FrameConsumer,
        on_released: Optional[ReleaseCallback],
    ) -> None:
        previous, previous_released = self._consumer, self._on_released
        self._consumer = consumer
        self._on_released = on_released
        if previous is not None and previous is not consumer:
            logger.info("Capture handed over to a new consumer.")
            if self._running:
                self._stop()
            if previous_released is not None:
                previous_released()

        if self._configured:
            logger.debug("Capture already configured; consumer rewired.")
            return

        device = self._discover(self.fps)
        if device is None:
            logger.error("No capture device available; configuration aborted.")
            return
        if not device.has_torch:
            logger.warning(
                "%s has no torch; measuring without illumination.", device.name
            )
        self._device = device
        self._configured = True

    def _start(self) -> None:
        if self._device is None:
            logger.warning("Capture start ignored: no device configured.")
            return
        if self._running:
            return
        self._stream += 1
        self._device.start_streaming(
            self._on_frame, functools.partial(self._on_stream_end, self._stream)
        )
        self._running = True
        self._set_torch(True)
        logger.info("Capture started (%s @ %d fps)", self._device.name, self.fps)

    def _stop(self, owner: Optional[FrameConsumer] = None) -> None:
        if owner is not None and owner is not self._consumer:
            logger.debug("Stop from a released consumer ignored.")
            return
        # Torch first: it must go off even if stopping the stream fails.
        self._set_torch(False)
        if not self._running:
            return
        self._running = False
        self._device.stop_streaming()
        logger.info(
            "Capture stopped – about %d frames delivered, %d dropped",
            self.delivered_frames, self.dropped_frames,
        )

    def _stream_ended(self, stream: int) -> None:
        # A stop or restart queued before this command already dealt with it.
        if not self._running or stream != self._stream:
            return
        logger.warning("%s stream ended unexpectedly.", self._device.name)
        self._stop()
        if self._on_released is not None:
            self._on_released()

    def _close(self) -> None:
        self._stop()
        if self._device is not None:
            self._device.close()
        self._device = None
        self._configured = False

    def _set_torch(self, on: bool) -> None:
        device = self._device
        if device is None or not device.has_torch:
            return
        try:
            device.set_torch(on, level=1.0)
        except Exception as exc:                         # noqa: BLE001
            logger.warning("Torch %s failed: %s", "on" if on else "off", exc)

    # ------------------------------------------------------------------
    # Frame path
    # ------------------------------------------------------------------

    def _on_stream_end(self, stream: int) -> None:
        # Reader thread, on its way out.
        try:
            self._submit(self._stream_ended, stream)
        except RuntimeError:
            logger.debug("Control queue shut down; stream end not handled.")

    def _on_frame(self, frame: Frame) -> None:
        # Reader thread.
        if not self._delivery_slot.acquire(blocking=False):
            self.dropped_frames += 1
            return
        try:
            self._delivery.submit(self._deliver, frame)
        except RuntimeError:
            self._delivery_slot.release()
            logger.debug("Delivery thread shut down; frame discarded.")

    def _deliver(self, frame: Frame) -> None:
        # Delivery thread.
        try:
            consumer = self._consumer
            if consumer is not None:
                consumer.process_frame(frame)
                self.delivered_frames += 1
        except Exception:
            logger.exception("Frame consumer failed")
        finally:
            self._delivery_slot.release()
