"""
Tests for CaptureService command ordering, torch handling and frame delivery.
"""

from __future__ import annotations

import logging
import threading
import time

import numpy as np

from conftest import DeviceFinder, FakeDevice, build_frame
from pulse_meter.camera import CaptureDevice
from pulse_meter.capture_service import CaptureService


class Sink:
    """Frame consumer remembering which thread processed each frame."""

    def __init__(self, fail_first: bool = False) -> None:
        self.frames = []
        self.threads = set()
        self._fail_first = fail_first

    def process_frame(self, frame) -> None:
        self.threads.add(threading.current_thread().name)
        if self._fail_first and not self.frames:
            self.frames.append(None)
            raise ValueError("boom")
        self.frames.append(frame)


class ScriptedDevice(CaptureDevice):
    """Real reader loop over a fixed list of images; *None* means a failed read."""

    name = "scripted"

    def __init__(self, images, error: bool = False) -> None:
        super().__init__()
        self._images = list(images)
        self._error = error

    def _open(self) -> None:
        pass

    def _release(self) -> None:
        pass

    def _read_image(self):
        if self._images:
            return self._images.pop(0)
        if self._error:
            raise OSError("sensor unplugged")
        return None


def _service(device) -> tuple[CaptureService, DeviceFinder]:
    finder = DeviceFinder(device)
    return CaptureService(discover=finder), finder


class TestConfigure:

    def test_discovers_once_then_rewires(self, capture, finder, device, feed):
        first, second = Sink(), Sink()
        capture.configure(first).result(timeout=5)
        capture.configure(second).result(timeout=5)
        assert finder.calls == 1
        assert device.events == ["open"]

        capture.start().result(timeout=5)
        feed(build_frame(red=150))
        assert first.frames == []
        assert len(second.frames) == 1

    def test_no_device_aborts_quietly(self, caplog):
        service, finder = _service(None)
        try:
            with caplog.at_level(logging.ERROR):
                service.configure(Sink()).result(timeout=5)
                service.start().result(timeout=5)
            assert not service.is_configured
            assert not service.is_running
            assert "No capture device" in caplog.text
        finally:
            service.shutdown()

    def test_discovery_error_is_logged_not_raised(self, caplog):
        def broken(fps):
            raise RuntimeError("camera busy")

        service = CaptureService(discover=broken)
        try:
            with caplog.at_level(logging.ERROR):
                assert service.configure(Sink()).result(timeout=5) is None
            assert not service.is_configured
            assert "camera busy" in caplog.text
        finally:
            service.shutdown()

    def test_start_queued_behind_slow_configure(self):
        gate = threading.Event()
        device = FakeDevice()

        def slow(fps):
            gate.wait(timeout=5)
            device.open(fps)
            return device

        service = CaptureService(discover=slow)
        try:
            service.configure(Sink())
            started = service.start()
            assert device.events == []
            gate.set()
            started.result(timeout=5)
            assert device.events == ["open", "start", "torch_on"]
        finally:
            service.shutdown()


class TestStartStop:

    def test_start_turns_torch_on_after_streaming(self, capture, device):
        capture.configure(Sink())
        capture.start().result(timeout=5)
        assert device.events == ["open", "start", "torch_on"]
        assert capture.is_running

    def test_start_twice_is_noop(self, capture, device):
        capture.configure(Sink())
        capture.start()
        capture.start().result(timeout=5)
        assert device.events.count("start") == 1

    def test_stop_turns_torch_off_first(self, capture, device):
        capture.configure(Sink())
        capture.start()
        capture.stop().result(timeout=5)
        assert device.events == ["open", "start", "torch_on", "torch_off", "stop"]
        assert not capture.is_running

    def test_stop_when_stopped_only_switches_torch_off(self, capture, device):
        capture.configure(Sink())
        capture.stop().result(timeout=5)
        assert device.events == ["open", "torch_off"]

    def test_rapid_start_stop_start_keeps_order(self, capture, device):
        capture.configure(Sink())
        capture.start()
        capture.stop()
        capture.start()
        capture.wait_idle(timeout=5)
        assert device.events == [
            "open",
            "start", "torch_on",
            "torch_off", "stop",
            "start", "torch_on",
        ]

    def test_instances_share_one_control_queue(self):
        gate = threading.Event()
        a_dev, b_dev = FakeDevice(), FakeDevice()
        a, _ = _service(a_dev)
        b, _ = _service(b_dev)
        try:
            a.configure(Sink())
            b.configure(Sink())
            blocker = a._control.submit(gate.wait, 5)
            b_started = b.start()
            assert not b_started.done()
            gate.set()
            blocker.result(timeout=5)
            b_started.result(timeout=5)
            assert b_dev.events == ["open", "start", "torch_on"]
        finally:
            a.shutdown()
            b.shutdown()

    def test_without_torch_capture_still_runs(self, caplog):
        device = FakeDevice(torch=False)
        service, _ = _service(device)
        try:
            with caplog.at_level(logging.WARNING):
                service.configure(Sink())
                service.start().result(timeout=5)
            assert device.events == ["open", "start"]
            assert service.is_running
            assert "without illumination" in caplog.text
        finally:
            service.shutdown()

    def test_torch_error_is_logged(self, caplog):
        device = FakeDevice(torch_error=True)
        service, _ = _service(device)
        try:
            with caplog.at_level(logging.WARNING):
                service.configure(Sink())
                service.start()
                service.stop().result(timeout=5)
            assert device.events == ["open", "start", "stop"]
            assert "Torch on failed" in caplog.text
            assert "Torch off failed" in caplog.text
        finally:
            service.shutdown()

    def test_shutdown_releases_device(self):
        device = FakeDevice()
        service, _ = _service(device)
        service.configure(Sink())
        service.start()
        service.shutdown()
        assert device.events[-3:] == ["torch_off", "stop", "close"]
        assert not service.is_configured


class TestDelivery:

    def test_frames_processed_on_delivery_thread(self, capture, feed):
        sink = Sink()
        capture.configure(sink)
        capture.start().result(timeout=5)
        for _ in range(3):
            feed(build_frame(red=150))
        assert len(sink.frames) == 3
        assert len(sink.threads) == 1
        assert next(iter(sink.threads)).startswith("frame-delivery")
        assert capture.delivered_frames == 3

    def test_late_frame_is_dropped(self, capture, device):
        sink = Sink()
        capture.configure(sink)
        capture.start().result(timeout=5)

        gate = threading.Event()
        busy = capture.call_on_delivery_thread(gate.wait, 5)
        device.push(build_frame(red=150))      # takes the delivery slot
        device.push(build_frame(red=151))      # slot taken → dropped
        gate.set()
        busy.result(timeout=5)
        capture.call_on_delivery_thread(lambda: None).result(timeout=5)

        assert len(sink.frames) == 1
        assert capture.dropped_frames == 1

    def test_consumer_error_does_not_stop_delivery(self, capture, feed, caplog):
        sink = Sink(fail_first=True)
        capture.configure(sink)
        capture.start().result(timeout=5)
        with caplog.at_level(logging.ERROR):
            feed(build_frame(red=150))
            feed(build_frame(red=150))
        assert len(sink.frames) == 2
        assert "Frame consumer failed" in caplog.text

    def test_no_frames_after_stop(self, capture, device):
        sink = Sink()
        capture.configure(sink)
        capture.start()
        capture.stop().result(timeout=5)
        device.push(build_frame(red=150))
        capture.call_on_delivery_thread(lambda: None).result(timeout=5)
        assert sink.frames == []


    def test_stop_logs_frame_totals(self, capture, feed, caplog):
        capture.configure(Sink())
        capture.start().result(timeout=5)
        feed(build_frame(red=150))
        feed(build_frame(red=150))
        with caplog.at_level(logging.INFO):
            capture.stop().result(timeout=5)
        assert "about 2 frames delivered, 0 dropped" in caplog.text

class TestOwnership:

    def test_new_consumer_releases_previous(self, capture, device):
        released = []
        first = Sink()
        capture.configure(first, on_released=lambda: released.append("first"))
        capture.start()
        capture.configure(Sink()).result(timeout=5)
        assert released == ["first"]
        assert device.events == ["open", "start", "torch_on", "torch_off", "stop"]
        assert not capture.is_running

    def test_rewiring_same_consumer_keeps_capture_running(self, capture, device):
        released = []
        sink = Sink()
        capture.configure(sink, on_released=lambda: released.append(1))
        capture.start()
        capture.configure(sink).result(timeout=5)
        assert released == []
        assert capture.is_running

    def test_stop_from_released_consumer_ignored(self, capture, device):
        first, second = Sink(), Sink()
        capture.configure(first)
        capture.configure(second)
        capture.start()
        capture.stop(first).result(timeout=5)
        assert device.events == ["open", "start", "torch_on"]
        assert capture.is_running

        capture.stop(second).result(timeout=5)
        assert device.events[-2:] == ["torch_off", "stop"]

    def test_dead_stream_stops_capture_and_releases(self, capture, device, caplog):
        released = []
        capture.configure(Sink(), on_released=lambda: released.append(1))
        capture.start().result(timeout=5)
        with caplog.at_level(logging.WARNING):
            device.die()
            capture.wait_idle(timeout=5)
        assert not capture.is_running
        assert released == [1]
        assert device.events[-2:] == ["torch_off", "stop"]
        assert "ended unexpectedly" in caplog.text

        capture.start().result(timeout=5)
        assert device.events[-2:] == ["start", "torch_on"]

    def test_stream_end_after_restart_ignored(self, capture, device):
        released = []
        capture.configure(Sink(), on_released=lambda: released.append(1))
        capture.start()
        capture.wait_idle(timeout=5)
        stale_end = device._on_end
        capture.stop()
        capture.start()
        stale_end()
        capture.wait_idle(timeout=5)
        assert capture.is_running
        assert released == []


class TestDeviceReader:

    def test_frames_converted_to_bgra(self):
        image = np.zeros((8, 8, 3), dtype=np.uint8)
        image[:, :, 2] = 200
        device = ScriptedDevice([image])
        frames, ended = [], threading.Event()
        device.start_streaming(frames.append, ended.set)
        assert ended.wait(timeout=5)
        device.stop_streaming()
        assert len(frames) == 1
        assert frames[0].pixels()[0, 0, 2] == 200

    def test_empty_reads_end_stream(self, caplog):
        device = ScriptedDevice([])
        ended = threading.Event()
        with caplog.at_level(logging.ERROR):
            device.start_streaming(lambda frame: None, ended.set)
            assert ended.wait(timeout=5)
            device._thread.join(timeout=5)
        assert not device.is_streaming
        assert "consecutive empty frames" in caplog.text

    def test_read_error_is_logged_and_ends_stream(self, caplog):
        device = ScriptedDevice([], error=True)
        ended = threading.Event()
        with caplog.at_level(logging.ERROR):
            device.start_streaming(lambda frame: None, ended.set)
            assert ended.wait(timeout=5)
            device._thread.join(timeout=5)
        assert not device.is_streaming
        assert "sensor unplugged" in caplog.text

    def test_stop_does_not_report_end(self):
        class Endless(ScriptedDevice):
            def _read_image(self):
                time.sleep(0.01)
                return np.zeros((4, 4, 3), dtype=np.uint8)

        device = Endless([])
        ended = threading.Event()
        device.start_streaming(lambda frame: None, ended.set)
        device.stop_streaming()
        assert not ended.is_set()
        assert not device.is_streaming
