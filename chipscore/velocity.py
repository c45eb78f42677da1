from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from .config import DrumInstrument, Texture

# ----- global -----
VELOCITY_MIN = 20
VELOCITY_MAX = 118

# ----- channel scaling -----
TRIANGLE_BASE_SCALE = 0.75
TRIANGLE_NON_BASS_SCALE = 0.9
BASS_BASE_SCALE = 0.7
BASS_LOW_RANGE_SCALE = 0.85
SQUARE_BASS_SCALE = 0.82
BASS_LOW_RANGE_MIDI = 52

# ----- bass -----
BASS_TEXTURE_VELOCITY: Mapping[Texture, int] = MappingProxyType(
    {
        "broken": 74,
        "steady": 70,
        "arpeggio": 76,
    }
)
BASS_DEFAULT_VELOCITY = 72
BASS_DOWNBEAT_ACCENT = 6
BASS_STRONG_ACCENT = 3

# ----- melody -----
MELODY_TEXTURE_VELOCITY: Mapping[Texture, int] = MappingProxyType(
    {
        "broken": 90,
        "steady": 86,
        "arpeggio": 92,
    }
)
MELODY_DEFAULT_VELOCITY = 88
MELODY_PICKUP_VELOCITY = 72
MELODY_VELOCITY_FLOOR = 58
MELODY_VELOCITY_CEILING = 110

# ----- accompaniment -----
ACCOMPANIMENT_BASE_VELOCITY = 58
ACCOMPANIMENT_DOWNBEAT_ACCENT = 6
ACCOMPANIMENT_EARLY_START = 52
ACCOMPANIMENT_PAD_MIN = 48
ARPEGGIO_SCALE = 0.75
BROKEN_SCALE = 0.9
STEADY_SCALE = 0.85

# ----- techniques -----
ECHO_SCALE = 0.6
DETUNE_SCALE = 0.7

# ----- noise -----
NOISE_VELOCITY: Mapping[DrumInstrument, int] = MappingProxyType(
    {
        "K": 120,
        "T": 116,
        "N": 112,
        "S": 115,
        "H": 118,
        "O": 114,
    }
)


def clamp_velocity(value: float, low: int = VELOCITY_MIN, high: int = VELOCITY_MAX) -> int:
    return max(low, min(high, int(round(value))))
