from __future__ import annotations

import math
import re
from bisect import bisect_right
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from .config import DrumInstrument
from .models import DrumHit, MidiNote, SectionDefinition

BEATS_PER_MEASURE = 4
STEPS_PER_BEAT = 4
MIDI_MIN = 0
MIDI_MAX = 127

DRUM_DURATION_BEATS: Mapping[DrumInstrument, float] = MappingProxyType(
    {
        "K": 0.25,
        "S": 0.25,
        "H": 0.125,
        "O": 0.375,
        "T": 0.5,
        "N": 0.375,
    }
)

NOTE_TO_SEMITONE: Mapping[str, int] = MappingProxyType(
    {
        "C": 0,
        "C#": 1,
        "Db": 1,
        "D": 2,
        "D#": 3,
        "Eb": 3,
        "E": 4,
        "F": 5,
        "F#": 6,
        "Gb": 6,
        "G": 7,
        "G#": 8,
        "Ab": 8,
        "A": 9,
        "A#": 10,
        "Bb": 10,
        "B": 11,
    }
)
NOTE_ORDER: tuple[str, ...] = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")

_CHORD_INTERVALS: Mapping[str, tuple[int, ...]] = MappingProxyType(
    {
        "": (0, 4, 7),
        "m": (0, 3, 7),
        "7": (0, 4, 7, 10),
        "m7": (0, 3, 7, 10),
        "maj7": (0, 4, 7, 11),
        "sus2": (0, 2, 7),
        "sus4": (0, 5, 7),
        "dim": (0, 3, 6),
        "aug": (0, 4, 8),
    }
)
_MAJOR_TRIAD = _CHORD_INTERVALS[""]
_MINOR_TRIAD = _CHORD_INTERVALS["m"]

_MODE_INTERVALS: Mapping[str, tuple[int, ...]] = MappingProxyType(
    {
        "major": (0, 2, 4, 5, 7, 9, 11),
        "minor": (0, 2, 3, 5, 7, 8, 10),
    }
)

CONSONANT_INTERVALS = frozenset({0, 3, 4, 5, 7, 8, 9})
_DISSONANCE_PENALTY = 10.0
_TARGET_DISTANCE_WEIGHT = 0.1
_REFERENCE_DISTANCE_WEIGHT = 0.05

_NOTE_VALUE_BEATS: Mapping[int, float] = MappingProxyType({2: 2.0, 4: 1.0, 8: 0.5, 16: 0.25})
_DEFAULT_NOTE_VALUE_BEATS = 0.25

_ROOT_PATTERN = re.compile(r"^([A-Ga-g])(#|b)?")
_QUALITY_PATTERN = re.compile(r"^([A-G](?:#|b)?)(m?)(.*)$")


def _split_root(chord: str) -> tuple[str, str] | None:
    match = _ROOT_PATTERN.match(chord)
    if match is None:
        return None
    root = match.group(1).upper() + (match.group(2) or "")
    return root, chord[match.end() :]


def chord_root_to_midi(chord: str, base: int) -> int:
    """Place the chord's root in the octave of ``base``; unparseable chords keep ``base``."""

    parsed = _split_root(chord)
    if parsed is None:
        return base
    semitone = NOTE_TO_SEMITONE.get(parsed[0])
    if semitone is None:
        return base
    return base - base % 12 + semitone


def chord_intervals(chord: str) -> tuple[int, ...]:
    parsed = _split_root(chord)
    suffix = parsed[1] if parsed is not None else ""
    intervals = _CHORD_INTERVALS.get(suffix)
    if intervals is not None:
        return intervals
    return _MINOR_TRIAD if suffix.startswith("m") and not suffix.startswith("maj") else _MAJOR_TRIAD


def transpose_chord(chord: str, semitones: int) -> str:
    parsed = _split_root(chord)
    if parsed is None:
        return chord
    root, suffix = parsed
    index = NOTE_TO_SEMITONE.get(root)
    if index is None:
        return chord
    return NOTE_ORDER[(index + semitones) % 12] + suffix


def toggle_chord_quality(chord: str) -> str:
    match = _QUALITY_PATTERN.match(chord)
    if match is None:
        return chord
    root, minor, rest = match.groups()
    if minor:
        return f"{root}{rest}"
    return f"{root}m{rest}"


def related_chords(chord: str) -> tuple[str, str, str]:
    """Fifth above, fourth above and the parallel-quality chord."""

    return (transpose_chord(chord, 7), transpose_chord(chord, 5), toggle_chord_quality(chord))


def key_scale_degrees(key: str) -> tuple[int, ...]:
    """Semitone offsets of ``key`` ("G_Major", "E_Minor", ...) relative to C.

    The tonic is folded into ``[-6, 5]`` so degree 1 sits near the register base.
    """

    root_name, _, mode_name = key.partition("_")
    mode = _MODE_INTERVALS.get(mode_name.lower(), _MODE_INTERVALS["major"])
    parsed = _split_root(root_name)
    tonic = NOTE_TO_SEMITONE.get(parsed[0], 0) if parsed is not None else 0
    if tonic > 5:
        tonic -= 12
    return tuple(tonic + interval for interval in mode)


def scale_degree_to_midi(
    degree: int,
    scale: Sequence[int],
    base: int,
    octave_offset: int = 0,
) -> int:
    size = len(scale)
    index = (degree - 1) % size
    octave = (degree - 1) // size + octave_offset
    return base + scale[index] + 12 * octave


def convert_to_beats(note_value: int) -> float:
    return _NOTE_VALUE_BEATS.get(note_value, _DEFAULT_NOTE_VALUE_BEATS)


def pattern_length_beats(values: Iterable[int]) -> float:
    return sum(convert_to_beats(value) for value in values)


def is_strong_beat(beat: float) -> bool:
    return math.isclose(beat, round(beat), abs_tol=1e-9)


def is_measure_boundary(beat: float) -> bool:
    return abs(beat % BEATS_PER_MEASURE) < 1e-6


def measure_of_beat(beat: float) -> int:
    return int(math.floor(beat / BEATS_PER_MEASURE))


def midi_to_frequency(midi: float) -> float:
    return 440.0 * 2.0 ** ((midi - 69) / 12.0)


def frequency_to_midi(frequency: float) -> float:
    return 69 + 12 * math.log2(frequency / 440.0)


def frequency_to_semitones(ratio: float) -> float:
    return 12 * math.log2(ratio)


def clamp_midi(value: int) -> int:
    return max(MIDI_MIN, min(MIDI_MAX, int(value)))


def _chord_candidates(root: int, chord: str) -> list[int]:
    intervals = chord_intervals(chord)
    return [root + interval + 12 * octave for interval in intervals for octave in range(-2, 3)]


def quantize_midi_to_chord(midi: int, chord: str) -> int:
    """Nearest chord tone to ``midi``; ties go to the earlier chord tone."""

    root = chord_root_to_midi(chord, midi)
    best = midi
    best_distance = math.inf
    for candidate in _chord_candidates(root, chord):
        distance = abs(candidate - midi)
        if distance < best_distance:
            best = candidate
            best_distance = distance
    return best


def ensure_consonant_pitch(midi: int, chord: str, reference: Optional[int] = None) -> int:
    """Chord tone near ``midi`` that also sounds consonant against ``reference``."""

    if reference is None:
        return quantize_midi_to_chord(midi, chord)
    root = chord_root_to_midi(chord, reference)
    best = midi
    best_score = math.inf
    for candidate in _chord_candidates(root, chord):
        interval = (candidate - reference) % 12
        score = 0.0 if interval in CONSONANT_INTERVALS else _DISSONANCE_PENALTY
        score += abs(candidate - midi) * _TARGET_DISTANCE_WEIGHT
        score += abs(candidate - reference) * _REFERENCE_DISTANCE_WEIGHT
        if score < best_score:
            best = candidate
            best_score = score
    return best


def drum_hits_from_pattern(pattern: str, start_beat: float, section_id: str) -> list[DrumHit]:
    """Expand a 16th-step drum string (``-`` is a rest) into hits."""

    hits: list[DrumHit] = []
    for index, symbol in enumerate(pattern):
        duration = DRUM_DURATION_BEATS.get(symbol)  # type: ignore[call-overload]
        if duration is None:
            continue
        hits.append(
            DrumHit(
                start_beat=start_beat + index / STEPS_PER_BEAT,
                duration_beats=duration,
                instrument=symbol,  # type: ignore[arg-type]
                section_id=section_id,
            )
        )
    return hits


def resolve_chord_at_beat(sections: Sequence[SectionDefinition], beat: float) -> str:
    measure = measure_of_beat(beat)
    for section in sections:
        if section.contains_measure(measure) and section.chord_progression:
            progression = section.chord_progression
            return progression[(measure - section.start_measure) % len(progression)]
    if sections and sections[0].chord_progression:
        return sections[0].chord_progression[0]
    return "C"


class SoundingNotes:
    """Lookup of the note sounding at a beat in a monophonic line."""

    __slots__ = ("_notes", "_starts")

    def __init__(self, notes: Iterable[MidiNote]) -> None:
        self._notes = sorted(notes, key=lambda note: note.start_beat)
        self._starts = [note.start_beat for note in self._notes]

    def at(self, beat: float) -> Optional[MidiNote]:
        index = bisect_right(self._starts, beat + 1e-9) - 1
        if index < 0:
            return None
        note = self._notes[index]
        if note.start_beat <= beat < note.end_beat:
            return note
        return None
