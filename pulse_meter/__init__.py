"""
Pulse Meter — camera-based heart-rate measurement.
Cover the camera (and its torch) with a fingertip; the engine follows the
red-channel brightness of the lit tissue, counts pulse peaks and reports a
live and a 30-second averaged BPM.
"""

__version__ = "0.1.0"
__author__ = "pulse_meter"
