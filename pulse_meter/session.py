"""
Measurement session controller.

:class:`MeasurementSession` is the object an application talks to.  It
starts and stops measurements, owns the published values (live BPM,
progress, finger flag, measuring flag) and turns the extractor's average
into the final result.

Threading
---------
Every public method must be called from one *consumer* thread (the UI or
main loop).  Extractor callbacks fire on the capture service's delivery
thread; they never touch the published values directly but post an event
onto an ordered queue that the consumer drains with
:meth:`MeasurementSession.process_events`.  Each event carries the
extractor session number it was produced in, and events from an older
session or arriving after the session ended are dropped.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, List, Optional

from .capture_service import CaptureService
from .extractor import SignalExtractor
from .permission import CameraPermission, PermissionStatus, StaticPermission

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


class SessionState(Enum):
    IDLE      = auto()   # never started
    MEASURING = auto()
    COMPLETE  = auto()   # stopped by the user or by the 30 s timeout


@dataclass(frozen=True)
class MeasurementSnapshot:
    heart_rate:          int
    progress:            float
    is_detecting_finger: bool
    is_measuring:        bool
    state:               SessionState
    permission_granted:  bool


class MeasurementSession:
    """
    Camera heart-rate measurement, one session at a time.

    Parameters
    ----------
    capture:
        Capture service to drive.  Defaults to the process-wide
        :meth:`CaptureService.shared` instance.
    permission:
        Camera permission source.  Defaults to an always-authorized
        :class:`StaticPermission`.
    extractor:
        Frame consumer.  Its callbacks are replaced by the session's own.
    """

    def __init__(
        self,
        capture: Optional[CaptureService] = None,
        permission: Optional[CameraPermission] = None,
        extractor: Optional[SignalExtractor] = None,
    ) -> None:
        self._capture = capture or CaptureService.shared()
        self._permission = permission or StaticPermission()
        self._extractor = extractor or SignalExtractor()

        self._extractor.on_heart_rate = self._heart_rate_from_delivery
        self._extractor.on_progress = self._progress_from_delivery
        self._extractor.on_finger_detected = self._finger_from_delivery

        self._events: "queue.SimpleQueue[tuple]" = queue.SimpleQueue()
        self._listeners: List[Listener] = []
        self._session = 0

        self._heart_rate = 0
        self._progress = 0.0
        self._is_detecting_finger = False
        self._state = SessionState.IDLE
        self._permission_granted = False

        self._check_permission()

    # ------------------------------------------------------------------
    # Published values
    # ------------------------------------------------------------------

    @property
    def heart_rate(self) -> int:
        """Live BPM while measuring; the averaged result once complete."""
        return self._heart_rate

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def is_detecting_finger(self) -> bool:
        return self._is_detecting_finger

    @property
    def is_measuring(self) -> bool:
        return self._state is SessionState.MEASURING

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def permission_granted(self) -> bool:
        return self._permission_granted

    def snapshot(self) -> MeasurementSnapshot:
        return MeasurementSnapshot(
            heart_rate=self._heart_rate,
            progress=self._progress,
            is_detecting_finger=self._is_detecting_finger,
            is_measuring=self.is_measuring,
            state=self._state,
            permission_granted=self._permission_granted,
        )

    def add_listener(self, listener: Listener) -> None:
        """
        Register ``listener(name, value)``, called on the consumer thread
        whenever a published value changes.  *name* is one of
        ``heart_rate``, ``progress``, ``is_detecting_finger``,
        ``is_measuring``, ``state`` or ``permission_granted``.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start_measurement(self) -> None:
        """Start a new session.  Ignored without permission or while measuring."""
        if not self._permission_granted or self.is_measuring:
            return

        # The session starting last owns the shared device.
        self._capture.configure(self._extractor, self._released_from_capture)
        self._set_state(SessionState.MEASURING)
        self._publish("progress", 0.0)
        self._publish("heart_rate", 0)
        self._publish("is_detecting_finger", False)

        self._session = self._capture.call_on_delivery_thread(
            self._extractor.reset
        ).result()
        self._capture.start()
        logger.info("Measurement session %d started", self._session)

    def stop_measurement(self) -> None:
        """
        End the session and publish the averaged BPM.

        Returns once the extractor has stopped taking frames and the torch-off
        command is queued ahead of the capture halt.  Ignored when not
        measuring.
        """
        if not self.is_measuring:
            return
        self._complete(release_device=True)

    def _complete(self, release_device: bool) -> None:
        self._set_state(SessionState.COMPLETE)

        finished = self._capture.call_on_delivery_thread(self._finish_extractor)
        if release_device:
            self._capture.stop(self._extractor)
        average = finished.result()

        if average > 0:
            self._publish("heart_rate", average)
        logger.info(
            "Measurement session %d complete – average %d BPM, published %d BPM",
            self._session, average, self._heart_rate,
        )

    def permission_changed(self, granted: bool) -> None:
        """Apply a permission answer observed on the consumer thread."""
        self._publish("permission_granted", granted)
        if granted:
            self._capture.configure(self._extractor, self._released_from_capture)
        else:
            logger.warning("Camera permission denied; measurements disabled.")
            self.stop_measurement()

    def process_events(self, timeout: Optional[float] = None) -> int:
        """
        Apply queued delivery-thread events on the calling thread.

        Waits up to *timeout* seconds for the first event when given,
        then drains whatever else is queued without blocking.  Returns the
        number of events handled.
        """
        handled = 0
        block = bool(timeout)
        while True:
            try:
                handler, args = self._events.get(block=block, timeout=timeout if block else None)
            except queue.Empty:
                return handled
            block = False
            handler(*args)
            handled += 1

    # ------------------------------------------------------------------
    # Permission
    # ------------------------------------------------------------------

    def _check_permission(self) -> None:
        status = self._permission.status()
        if status is PermissionStatus.AUTHORIZED:
            self.permission_changed(True)
        elif status is PermissionStatus.NOT_DETERMINED:
            self._permission.request(
                lambda granted: self._post(self.permission_changed, granted)
            )
        else:
            logger.warning("Camera permission denied; measurements disabled.")

    # ------------------------------------------------------------------
    # Delivery thread → consumer thread
    # ------------------------------------------------------------------

    def _post(self, handler: Callable, *args) -> None:
        self._events.put((handler, args))

    def _finish_extractor(self) -> int:
        self._extractor.stop()
        return self._extractor.get_average_heart_rate()

    def _released_from_capture(self) -> None:
        # Control queue.
        self._post(self._apply_released, self._session)

    def _heart_rate_from_delivery(self, bpm: int) -> None:
        self._post(self._apply_heart_rate, self._extractor.session, bpm)

    def _progress_from_delivery(self, progress: float) -> None:
        self._post(self._apply_progress, self._extractor.session, progress)

    def _finger_from_delivery(self, detected: bool) -> None:
        self._post(self._apply_finger, self._extractor.session, detected)

    def _is_current(self, session: int) -> bool:
        return self.is_measuring and session == self._session

    def _apply_heart_rate(self, session: int, bpm: int) -> None:
        if self._is_current(session):
            self._publish("heart_rate", bpm)

    def _apply_progress(self, session: int, progress: float) -> None:
        if not self._is_current(session):
            return
        self._publish("progress", progress)
        if progress >= 1.0:
            self.stop_measurement()

    def _apply_finger(self, session: int, detected: bool) -> None:
        if self._is_current(session):
            self._publish("is_detecting_finger", detected)

    def _apply_released(self, session: int) -> None:
        if not self._is_current(session):
            return
        logger.warning("Capture device lost; ending session %d early", session)
        self._complete(release_device=False)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        was_measuring = self.is_measuring
        self._publish("state", state)
        if self.is_measuring != was_measuring:
            self._notify("is_measuring", self.is_measuring)

    def _publish(self, name: str, value: Any) -> None:
        attr = "_" + name
        if getattr(self, attr) == value:
            return
        setattr(self, attr, value)
        self._notify(name, value)

    def _notify(self, name: str, value: Any) -> None:
        for listener in list(self._listeners):
            listener(name, value)
