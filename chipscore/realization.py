from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from .config import Channel, CompositionOptions, DrumInstrument, StyleIntent, TempoSetting, Texture, VoiceRole
from .models import (
    DrumHit,
    MidiNote,
    MotifSelection,
    NoiseMode,
    NoiseNoteOn,
    NoteOff,
    PitchNoteOn,
    SectionDefinition,
    Slide,
    StructurePlan,
    TimedEvent,
    Voice,
)
from .rng import DeterministicRNG, derive_seed
from .theory import (
    SoundingNotes,
    chord_intervals,
    ensure_consonant_pitch,
    measure_of_beat,
    quantize_midi_to_chord,
    resolve_chord_at_beat,
)
from .velocity import (
    ACCOMPANIMENT_PAD_MIN,
    ARPEGGIO_SCALE,
    BASS_BASE_SCALE,
    BASS_LOW_RANGE_MIDI,
    BASS_LOW_RANGE_SCALE,
    BROKEN_SCALE,
    DETUNE_SCALE,
    ECHO_SCALE,
    NOISE_VELOCITY,
    SQUARE_BASS_SCALE,
    STEADY_SCALE,
    TRIANGLE_BASE_SCALE,
    TRIANGLE_NON_BASS_SCALE,
    clamp_velocity,
)

_LOGGER = logging.getLogger("chipscore.realization")

# =============================================================================
# PART 1: Constants
# =============================================================================

_REALIZATION_SALT = 400
_EPSILON = 1e-9

NOISE_MAX_DURATION_BEATS = 0.5
NOISE_STACK_OFFSET = 1 / 16
NOISE_STACKABLE_PAIRS = frozenset({("H", "H"), ("H", "O"), ("O", "H")})

PORTAMENTO_MAX_INTERVAL = 5
PORTAMENTO_MAX_GAP = 0.5
PORTAMENTO_MIN_DURATION = 0.5
PORTAMENTO_BASE_SECONDS = 0.06

ECHO_OFFSET_BEATS = 0.25
DETUNE_CENTS = 12.0

_BASS_ROLES: frozenset[VoiceRole] = frozenset({"bass", "bassAlt"})
_MELODY_ROLES: frozenset[VoiceRole] = frozenset({"melody", "melodyAlt"})
_TEXTURED_ROLES: frozenset[VoiceRole] = frozenset({"accompaniment", "pad"})


@dataclass(frozen=True, slots=True)
class NoiseInstrument:
    mode: NoiseMode
    period_index: int
    release_range: tuple[float, float]
    velocity: int
    amplitude: float


NOISE_INSTRUMENTS: Mapping[DrumInstrument, NoiseInstrument] = MappingProxyType(
    {
        "K": NoiseInstrument("long_period", 3, (0.045, 0.075), NOISE_VELOCITY["K"], 1.0),
        "T": NoiseInstrument("long_period", 5, (0.05, 0.09), NOISE_VELOCITY["T"], 0.92),
        "N": NoiseInstrument("long_period", 8, (0.06, 0.1), NOISE_VELOCITY["N"], 0.88),
        "S": NoiseInstrument("short_period", 1, (0.02, 0.045), NOISE_VELOCITY["S"], 0.9),
        "H": NoiseInstrument("short_period", 0, (0.015, 0.03), NOISE_VELOCITY["H"], 0.86),
        "O": NoiseInstrument("short_period", 2, (0.03, 0.055), NOISE_VELOCITY["O"], 0.94),
    }
)


@dataclass(frozen=True, slots=True)
class ArpeggioProfile:
    reverse_probability: float
    sustain_probability: float
    sparse_threshold: float
    normal_threshold: float


@dataclass(frozen=True, slots=True)
class VoiceAllocation:
    beat_time: float
    channel: Channel
    active_count: int


@dataclass(frozen=True, slots=True)
class Realization:
    """Beat-clocked events plus the running active-note count per channel."""

    events: list[TimedEvent]
    voice_allocation: list[VoiceAllocation]


@dataclass(slots=True)
class _PitchedNote:
    start: float
    duration: float
    midi: int
    velocity: int
    detune_cents: Optional[float] = None
    slide: Optional[Slide] = None

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True, slots=True)
class _RealizationContext:
    options: CompositionOptions
    plan: StructurePlan
    rng: DeterministicRNG
    section_by_id: Mapping[str, SectionDefinition]
    melody: SoundingNotes

    @property
    def intent(self) -> StyleIntent:
        return self.plan.style_intent

    @property
    def total_beats(self) -> float:
        return float(self.plan.total_beats)


# =============================================================================
# PART 2: Velocity and portamento
# =============================================================================


def adjust_velocity_for_channel(channel: Channel, role: VoiceRole, midi: int, velocity: int) -> int:
    scale = 1.0
    is_bass = role in _BASS_ROLES
    if is_bass:
        scale *= BASS_BASE_SCALE
        if midi < BASS_LOW_RANGE_MIDI:
            scale *= BASS_LOW_RANGE_SCALE
    if channel == "triangle":
        scale *= TRIANGLE_BASE_SCALE
        if not is_bass:
            scale *= TRIANGLE_NON_BASS_SCALE
    if channel in ("square1", "square2") and is_bass:
        scale *= SQUARE_BASS_SCALE
    return clamp_velocity(velocity * scale)


def portamento_probability(intent: StyleIntent) -> float:
    if intent.atmos_pad:
        return 0.4
    if intent.loop_centric and intent.texture_focus:
        return 0.35
    if intent.gradual_build and intent.break_insertion:
        return 0.25
    return 0.15


def portamento_seconds(tempo: TempoSetting, interval: int) -> float:
    duration = PORTAMENTO_BASE_SECONDS
    if tempo == "slow":
        duration += 0.02
    elif tempo == "fast":
        duration -= 0.015
    if interval >= 4:
        duration += 0.01
    return max(0.02, min(0.12, duration))


def _slide_between(note: MidiNote, following: MidiNote, ctx: _RealizationContext) -> Optional[Slide]:
    interval = abs(following.midi - note.midi)
    gap = following.start_beat - note.end_beat
    eligible = (
        0 < interval <= PORTAMENTO_MAX_INTERVAL
        and -1e-3 <= gap <= PORTAMENTO_MAX_GAP
        and note.duration_beats >= PORTAMENTO_MIN_DURATION
    )
    if not eligible or ctx.rng.random() >= portamento_probability(ctx.intent):
        return None
    return Slide(target_midi=following.midi, duration_seconds=portamento_seconds(ctx.options.tempo, interval))


def _realize_melody(notes: Sequence[MidiNote], ctx: _RealizationContext) -> list[_PitchedNote]:
    ordered = sorted(notes, key=lambda note: note.start_beat)
    realized: list[_PitchedNote] = []
    for index, note in enumerate(ordered):
        following = ordered[index + 1] if index + 1 < len(ordered) else None
        slide = _slide_between(note, following, ctx) if following is not None else None
        realized.append(_PitchedNote(note.start_beat, note.duration_beats, note.midi, note.velocity, slide=slide))
    return realized


# =============================================================================
# PART 3: Accompaniment textures
# =============================================================================


def resolve_arpeggio_profile(intent: StyleIntent, texture: Texture) -> ArpeggioProfile:
    reverse, sustain, sparse, normal = 0.5, 0.2, 0.45, 0.85
    if intent.texture_focus:
        reverse, sustain, sparse, normal = 0.35, 0.12, 0.3, 0.7
    if intent.loop_centric:
        sustain = min(0.35, sustain + 0.1)
        sparse = min(0.5, sparse + 0.05)
        normal = min(0.95, normal + 0.05)
    if texture == "arpeggio" and intent.gradual_build:
        sparse, normal = 0.25, 0.65
    return ArpeggioProfile(reverse, sustain, sparse, normal)


def arpeggio_intervals(chord: str) -> list[int]:
    cycle = chord_intervals(chord) or (0, 4, 7)
    return [cycle[step % len(cycle)] + 12 * (step // len(cycle)) for step in range(4)]


def _arpeggiate(seed: MidiNote, chord: str, texture: Texture, ctx: _RealizationContext) -> list[_PitchedNote]:
    profile = resolve_arpeggio_profile(ctx.intent, texture)
    velocity = max(ACCOMPANIMENT_PAD_MIN, round(seed.velocity * ARPEGGIO_SCALE))
    if ctx.rng.random() < profile.sustain_probability:
        midi = ensure_consonant_pitch(seed.midi, chord, seed.midi)
        return [_PitchedNote(seed.start_beat, max(seed.duration_beats, 1.0), midi, velocity)]

    pattern = arpeggio_intervals(chord)
    if ctx.rng.random() < profile.reverse_probability:
        pattern.reverse()
    roll = ctx.rng.random()
    if roll < profile.sparse_threshold:
        subdivisions, step = 2, 0.5
    elif roll < profile.normal_threshold:
        subdivisions, step = 4, 0.25
    else:
        subdivisions, step = 1, max(seed.duration_beats, 1.0)

    notes: list[_PitchedNote] = []
    for index in range(subdivisions):
        candidate = quantize_midi_to_chord(seed.midi + pattern[index % len(pattern)], chord)
        midi = ensure_consonant_pitch(candidate, chord, seed.midi)
        notes.append(_PitchedNote(seed.start_beat + step * index, step, midi, velocity))
    return notes


def _broken(seed: MidiNote) -> list[_PitchedNote]:
    velocity = max(ACCOMPANIMENT_PAD_MIN, round(seed.velocity * BROKEN_SCALE))
    return [_PitchedNote(seed.start_beat + offset, 0.5, seed.midi, velocity) for offset in (0.0, 0.5)]


def _steady(seed: MidiNote) -> _PitchedNote:
    velocity = max(ACCOMPANIMENT_PAD_MIN, round(seed.velocity * STEADY_SCALE))
    return _PitchedNote(seed.start_beat, max(seed.duration_beats, 1.0), seed.midi, velocity)


def _ornament(notes: Iterable[_PitchedNote], ctx: _RealizationContext) -> list[_PitchedNote]:
    """Echo and detune copies per the plan's technique strategy."""

    strategy = ctx.plan.technique_strategy
    echoes: list[_PitchedNote] = []
    detuned: list[_PitchedNote] = []
    base = list(notes)
    for note in base:
        if ctx.rng.random() < strategy.echo_probability:
            echoes.append(replace(note, start=note.start + ECHO_OFFSET_BEATS, velocity=round(note.velocity * ECHO_SCALE)))
        if ctx.rng.random() < strategy.detune_probability:
            detuned.append(replace(note, velocity=round(note.velocity * DETUNE_SCALE), detune_cents=DETUNE_CENTS))
    return base + echoes + detuned


def _realize_accompaniment(seeds: Sequence[MidiNote], ctx: _RealizationContext) -> list[_PitchedNote]:
    by_measure: dict[int, list[MidiNote]] = {}
    for seed in sorted(seeds, key=lambda note: note.start_beat):
        by_measure.setdefault(measure_of_beat(seed.start_beat), []).append(seed)

    realized: list[_PitchedNote] = []
    for measure in sorted(by_measure):
        bucket = by_measure[measure]
        section = ctx.section_by_id.get(bucket[0].section_id)
        texture: Texture = section.texture if section is not None else "steady"
        chord = resolve_chord_at_beat(ctx.plan.sections, bucket[0].start_beat)

        processed: list[_PitchedNote] = []
        for seed in bucket:
            if texture == "arpeggio":
                processed.extend(_arpeggiate(seed, chord, texture, ctx))
            elif texture == "broken":
                processed.extend(_broken(seed))
            else:
                processed.append(_steady(seed))

        for note in _ornament(processed, ctx):
            reference = ctx.melody.at(note.start)
            note_chord = resolve_chord_at_beat(ctx.plan.sections, note.start)
            note.midi = ensure_consonant_pitch(
                note.midi, note_chord, reference.midi if reference is not None else note.midi
            )
            realized.append(note)
    return realized


def _realize_plain(notes: Sequence[MidiNote]) -> list[_PitchedNote]:
    return [
        _PitchedNote(note.start_beat, note.duration_beats, note.midi, note.velocity, note.detune_cents)
        for note in notes
    ]


# =============================================================================
# PART 4: Monophony and pitched events
# =============================================================================


def make_monophonic(notes: Iterable[_PitchedNote], total_beats: float) -> list[_PitchedNote]:
    """One sounding note per channel: later onsets truncate, simultaneous onsets fold."""

    ordered = sorted(
        (note for note in notes if note.start < total_beats - _EPSILON),
        key=lambda note: note.start,
    )
    merged: list[_PitchedNote] = []
    for note in ordered:
        note = replace(note, duration=min(note.duration, total_beats - note.start))
        if merged and abs(merged[-1].start - note.start) < _EPSILON:
            previous = merged[-1]
            previous.duration = max(previous.duration, note.duration)
            if previous.detune_cents is None and note.detune_cents is not None:
                previous.detune_cents = note.detune_cents
            continue
        if merged and merged[-1].end > note.start:
            merged[-1].duration = note.start - merged[-1].start
        merged.append(note)
    return [note for note in merged if note.duration > _EPSILON]


def _pitched_events(channel: Channel, role: VoiceRole, notes: Sequence[_PitchedNote]) -> list[TimedEvent]:
    events: list[TimedEvent] = []
    for note in notes:
        payload = PitchNoteOn(
            midi=note.midi,
            velocity=adjust_velocity_for_channel(channel, role, note.midi, note.velocity),
            detune_cents=note.detune_cents,
            slide=note.slide,
        )
        events.append(TimedEvent(note.start, channel, "noteOn", payload))
        events.append(TimedEvent(note.end, channel, "noteOff", NoteOff()))
    return events


# =============================================================================
# PART 5: Noise channel
# =============================================================================


def allows_noise_stacking(previous: Optional[DrumInstrument], current: DrumInstrument) -> bool:
    return previous is not None and (previous, current) in NOISE_STACKABLE_PAIRS


def resolve_noise_release(instrument: NoiseInstrument, intent: StyleIntent, rng: DeterministicRNG) -> float:
    low, high = instrument.release_range
    base = low + rng.random() * max(0.0, high - low)
    if intent.percussive_layering:
        return max(low, base * 0.85)
    if intent.gradual_build:
        return min(high, base * 1.05)
    return base


def realize_drums(hits: Sequence[DrumHit], ctx: _RealizationContext) -> list[TimedEvent]:
    """Noise note pairs with collision avoidance; at most one hit sounds unless it may stack."""

    events: list[TimedEvent] = []
    last_on: Optional[float] = None
    last_off: Optional[float] = None
    last_instrument: Optional[DrumInstrument] = None

    for hit in sorted(hits, key=lambda item: item.start_beat):
        instrument = NOISE_INSTRUMENTS.get(hit.instrument)
        if instrument is None:
            continue
        can_stack = allows_noise_stacking(last_instrument, hit.instrument)
        offset = 0.0 if can_stack else NOISE_STACK_OFFSET
        start = hit.start_beat
        if last_on is not None and start - last_on <= offset:
            start = last_on + NOISE_STACK_OFFSET

        release = resolve_noise_release(instrument, ctx.intent, ctx.rng)
        decay = max(0.01, release * 0.7)
        if start >= ctx.total_beats:
            continue

        if last_off is not None and start < last_off:
            if can_stack:
                events[-1].beat_time = start
                last_off = start
            else:
                del events[-2:]
                last_on = last_off = None

        events.append(
            TimedEvent(
                start,
                "noise",
                "noteOn",
                NoiseNoteOn(
                    noise_mode=instrument.mode,
                    velocity=instrument.velocity,
                    amplitude=instrument.amplitude,
                    release_seconds=release,
                    decay_seconds=decay,
                    period_index=instrument.period_index,
                ),
            )
        )
        end = min(start + min(hit.duration_beats, NOISE_MAX_DURATION_BEATS), ctx.total_beats)
        events.append(TimedEvent(end, "noise", "noteOff", NoteOff()))
        last_on, last_off, last_instrument = start, end, hit.instrument
    return events


# =============================================================================
# PART 6: Entry point
# =============================================================================


def compute_voice_allocation(events: Sequence[TimedEvent]) -> list[VoiceAllocation]:
    counts: dict[Channel, int] = {}
    allocation: list[VoiceAllocation] = []
    for event in events:
        current = counts.get(event.channel, 0)
        if event.command == "noteOn":
            current += 1
        elif event.command == "noteOff" and current > 0:
            current -= 1
        counts[event.channel] = current
        allocation.append(VoiceAllocation(event.beat_time, event.channel, current))
    return allocation


def _realize_voice(voice: Voice, notes: Sequence[MidiNote], ctx: _RealizationContext) -> list[_PitchedNote]:
    if voice.role in _MELODY_ROLES:
        return _realize_melody(notes, ctx)
    if voice.role in _TEXTURED_ROLES:
        return _realize_accompaniment(notes, ctx)
    return _realize_plain(notes)


def realize_events(options: CompositionOptions, plan: StructurePlan, selection: MotifSelection) -> Realization:
    ctx = _RealizationContext(
        options=options,
        plan=plan,
        rng=DeterministicRNG(derive_seed(options.seed, _REALIZATION_SALT)),
        section_by_id={section.id: section for section in plan.sections},
        melody=SoundingNotes(selection.tracks.get("melody", ())),
    )

    events: list[TimedEvent] = []
    for voice in plan.voice_arrangement.voices:
        notes = selection.tracks.get(voice.role)
        if not notes:
            continue
        realized = make_monophonic(_realize_voice(voice, notes, ctx), ctx.total_beats)
        events.extend(_pitched_events(voice.channel, voice.role, realized))
    events.extend(realize_drums(selection.drums, ctx))
    events.sort(key=lambda event: event.beat_time)

    allocation = compute_voice_allocation(events)
    _LOGGER.debug("Realized %d events over %.0f beats", len(events), ctx.total_beats)
    return Realization(events=events, voice_allocation=allocation)
