"""
Fixed engine parameters.

The peak-detection maths assumes the camera really delivers
``FRAME_RATE`` frames per second, so these are not runtime options.
"""

FRAME_RATE = 30                     # frames per second, locked on the device
SESSION_SECONDS = 30.0              # automatic stop after this long
SETTLING_SECONDS = 4.0              # estimates before this are not averaged

HISTORY_CAPACITY = 300              # ~10 s of red-channel samples
MIN_HISTORY = 60                    # need strictly more than this to estimate
PEAK_INTERVAL = 30                  # run peak detection every N samples

SAMPLE_REGION = 100                 # side of the centred sampling square (px)
SAMPLE_STEP = 10                    # read every Nth pixel in both axes

SMOOTHING_RADIUS = 2                # moving average = 2 * radius + 1 points
PEAK_DEBOUNCE = 8                   # min index gap between counted peaks

FINGER_RED_THRESHOLD = 60.0
FINGER_RED_DOMINANCE = 3.0

BPM_LOW = 40.0                      # exclusive
BPM_HIGH = 200.0                    # exclusive
