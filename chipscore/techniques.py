"""Timbral automation layered over realized notes.

Only ``setParam`` events are added; note events pass through untouched.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

from .config import ALL_CHANNELS, Channel, StyleIntent
from .library import DutySweep, GainProfile, TechniqueLibrary
from .models import SetParam, TimedEvent
from .theory import BEATS_PER_MEASURE, is_measure_boundary

_LOGGER = logging.getLogger("chipscore.techniques")

BREAK_CYCLE_MEASURES = 8
BREAK_LEAD_IN_BEATS = 0.25
BREAK_RECOVERY_BEATS = 1.0
BREAK_NOISE_GAIN = (0.45, 0.78)
BREAK_SQUARE_GAIN = (0.55, 0.82)

GRADUAL_BUILD_GAIN_RAMP: Mapping[Channel, tuple[float, float]] = MappingProxyType(
    {
        "square1": (0.68, 0.9),
        "square2": (0.66, 0.88),
        "triangle": (0.48, 0.68),
        "noise": (0.74, 0.82),
    }
)

FILTER_SWELL = DutySweep(
    id="STYLE_FILTER_SWELL",
    param="duty",
    channels=("square1", "square2"),
    min_duration_beats=2.0,
    steps=(0.2, 0.6, 0.4, 0.75),
)
PROGRESSIVE_DUTY_SWELL = DutySweep(
    id="STYLE_PROGRESSIVE_DUTY_SWELL",
    param="duty",
    channels=("square2",),
    min_duration_beats=1.0,
    steps=(0.32, 0.48, 0.58, 0.68),
)
NOISE_PUNCH = GainProfile(id="STYLE_NOISE_PUNCH", channel="noise", measure_boundary_value=0.85, default_value=0.78)
SIDECHAIN_SQ1 = GainProfile(
    id="STYLE_MINIMAL_SIDECHAIN_SQ1", channel="square1", measure_boundary_value=0.74, default_value=0.62
)
SIDECHAIN_SQ2 = GainProfile(
    id="STYLE_MINIMAL_SIDECHAIN_SQ2", channel="square2", measure_boundary_value=0.72, default_value=0.6
)
TRIANGLE_PAD = GainProfile(id="STYLE_TRIANGLE_PAD", channel="triangle", measure_boundary_value=0.82, default_value=0.72)
TRIANGLE_RISE = GainProfile(
    id="STYLE_PROGRESSIVE_TRI_RISE", channel="triangle", measure_boundary_value=0.9, default_value=0.76
)


def style_bundles(intent: StyleIntent) -> tuple[list[DutySweep], list[GainProfile]]:
    """Extra sweeps and gain profiles switched on by style flags."""

    sweeps: list[DutySweep] = []
    profiles: list[GainProfile] = []
    if intent.filter_motion:
        sweeps.append(FILTER_SWELL)
    if intent.percussive_layering:
        profiles.append(NOISE_PUNCH)
        if not intent.break_insertion:
            profiles.extend((SIDECHAIN_SQ1, SIDECHAIN_SQ2))
    if intent.atmos_pad:
        profiles.append(TRIANGLE_PAD)
    if intent.gradual_build and intent.break_insertion:
        sweeps.append(PROGRESSIVE_DUTY_SWELL)
        profiles.append(TRIANGLE_RISE)
    return sweeps, profiles


class NoteOffIndex:
    """Earliest noteOff strictly after a beat, per channel."""

    def __init__(self, events: Sequence[TimedEvent]) -> None:
        offs: dict[Channel, list[float]] = {}
        for event in events:
            if event.command == "noteOff":
                offs.setdefault(event.channel, []).append(event.beat_time)
        self._offs = {channel: sorted(times) for channel, times in offs.items()}

    def after(self, channel: Channel, beat: float) -> Optional[float]:
        times = self._offs.get(channel)
        if not times:
            return None
        index = bisect_right(times, beat)
        return times[index] if index < len(times) else None


def _param(beat: float, channel: Channel, param: str, value: float) -> TimedEvent:
    return TimedEvent(beat, channel, "setParam", SetParam(param=param, value=value))


def _sweep_events(sweep: DutySweep, event: TimedEvent, off_beat: float) -> list[TimedEvent]:
    duration = off_beat - event.beat_time
    if event.channel not in sweep.channels or duration < sweep.min_duration_beats:
        return []
    if sweep.require_measure_boundary and not (
        is_measure_boundary(event.beat_time) or is_measure_boundary(off_beat)
    ):
        return []
    spacing = duration / (len(sweep.steps) + 1)
    return [
        _param(event.beat_time + spacing * (index + 1), event.channel, sweep.param, value)
        for index, value in enumerate(sweep.steps)
    ]


def break_dip_events(measure: int) -> list[TimedEvent]:
    start = float(measure * BEATS_PER_MEASURE)
    dip_at = start - BREAK_LEAD_IN_BEATS if start - BREAK_LEAD_IN_BEATS >= 0 else start
    recover_at = start + BREAK_RECOVERY_BEATS
    events = [
        _param(dip_at, "noise", "gain", BREAK_NOISE_GAIN[0]),
        _param(recover_at, "noise", "gain", BREAK_NOISE_GAIN[1]),
    ]
    for channel in ("square1", "square2"):
        events.append(_param(dip_at, channel, "gain", BREAK_SQUARE_GAIN[0]))
        events.append(_param(recover_at, channel, "gain", BREAK_SQUARE_GAIN[1]))
    return events


def gradual_build_ramp(total_measures: int, loop_centric: bool) -> list[TimedEvent]:
    events: list[TimedEvent] = []
    step = max(1, total_measures // 8)
    exponent = 0.8 if loop_centric else 1.0
    for channel in ALL_CHANNELS:
        base, peak = GRADUAL_BUILD_GAIN_RAMP[channel]
        for measure in range(0, total_measures, step):
            progress = measure / (total_measures - 1) if total_measures > 1 else 1.0
            value = round(base + (peak - base) * progress**exponent, 3)
            events.append(_param(float(measure * BEATS_PER_MEASURE), channel, "gain", value))
    return events


def apply_techniques(
    events: Sequence[TimedEvent],
    intent: StyleIntent,
    techniques: TechniqueLibrary,
) -> list[TimedEvent]:
    added = [_param(0.0, preset.channel, preset.param, preset.value) for preset in techniques.initial_params]

    extra_sweeps, extra_profiles = style_bundles(intent)
    sweeps = [*techniques.duty_sweeps, *extra_sweeps]
    profiles = [*techniques.gain_profiles, *extra_profiles]

    offs = NoteOffIndex(events)
    break_measures: set[int] = set()
    for event in events:
        if event.command != "noteOn":
            continue
        off_beat = offs.after(event.channel, event.beat_time)
        if off_beat is not None:
            for sweep in sweeps:
                added.extend(_sweep_events(sweep, event, off_beat))

        for profile in profiles:
            if profile.channel != event.channel:
                continue
            value = profile.measure_boundary_value if is_measure_boundary(event.beat_time) else profile.default_value
            added.append(_param(event.beat_time, event.channel, profile.param, value))

        if intent.break_insertion and event.channel == "noise":
            measure = int(event.beat_time // BEATS_PER_MEASURE)
            if measure > 0 and (measure + 1) % BREAK_CYCLE_MEASURES == 0 and measure not in break_measures:
                break_measures.add(measure)
                added.extend(break_dip_events(measure))

    last_beat = max((event.beat_time for event in events), default=0.0)
    total_measures = max(1, math.ceil(last_beat / BEATS_PER_MEASURE))
    if intent.gradual_build and total_measures > 1:
        added.extend(gradual_build_ramp(total_measures, intent.loop_centric))

    _LOGGER.debug("Added %d parameter events (%d break dips)", len(added), len(break_measures))
    merged = [*events, *added]
    merged.sort(key=lambda event: (event.beat_time, event.command != "setParam"))
    return merged
