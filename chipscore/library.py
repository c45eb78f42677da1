from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Iterable, Literal, Mapping, Optional, Sequence, TypeVar

from .config import Channel, Texture
from .errors import MotifLibraryError
from .theory import pattern_length_beats

_LOGGER = logging.getLogger("chipscore.library")

BassStep = Literal["root", "fifth", "lowFifth", "octave", "octaveHigh", "approach", "rest"]
DrumKind = Literal["beat", "fill"]

_LENGTH_TOLERANCE = 1e-6

# =============================================================================
# PART 1: Motif records
# =============================================================================


@dataclass(frozen=True, slots=True)
class RhythmMotif:
    """Accompaniment rhythm as note values (2 half, 4 quarter, 8 eighth, 16 sixteenth)."""

    id: str
    length: float
    pattern: tuple[int, ...]
    tags: tuple[str, ...]
    variations: tuple[str, ...] = ()

    @property
    def is_consistent(self) -> bool:
        return abs(pattern_length_beats(self.pattern) - self.length) <= _LENGTH_TOLERANCE


@dataclass(frozen=True, slots=True)
class MelodyFragment:
    id: str
    pattern: tuple[int, ...]
    tags: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class MelodyRhythmStep:
    value: int
    rest: bool = False


@dataclass(frozen=True, slots=True)
class MelodyRhythmMotif:
    id: str
    length: float
    steps: tuple[MelodyRhythmStep, ...]
    tags: tuple[str, ...]

    @property
    def is_consistent(self) -> bool:
        total = pattern_length_beats(step.value for step in self.steps)
        return abs(total - self.length) <= _LENGTH_TOLERANCE


@dataclass(frozen=True, slots=True)
class DrumPattern:
    """One 16th-step drum string; each character is a quarter beat."""

    id: str
    kind: DrumKind
    pattern: str
    length_beats: float
    tags: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class BassPatternMotif:
    id: str
    texture: Texture
    steps: tuple[BassStep, ...]
    tags: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TransitionMotif:
    id: str
    pattern: str
    length_beats: float
    tags: tuple[str, ...]
    channel: Channel = "noise"


@dataclass(frozen=True, slots=True)
class ParamSetting:
    channel: Channel
    param: str
    value: float


@dataclass(frozen=True, slots=True)
class DutySweep:
    """Evenly spaced duty changes across one sustained note."""

    id: str
    param: str
    channels: tuple[Channel, ...]
    min_duration_beats: float
    steps: tuple[float, ...]
    require_measure_boundary: bool = False


@dataclass(frozen=True, slots=True)
class GainProfile:
    """Gain applied at every note-on of a channel, louder on measure downbeats."""

    id: str
    channel: Channel
    measure_boundary_value: float
    default_value: float
    param: str = "gain"


@dataclass(frozen=True, slots=True)
class TechniqueLibrary:
    initial_params: tuple[ParamSetting, ...] = ()
    duty_sweeps: tuple[DutySweep, ...] = ()
    gain_profiles: tuple[GainProfile, ...] = ()


# =============================================================================
# PART 2: Library container
# =============================================================================

ChordTable = Mapping[str, Mapping[str, tuple[tuple[str, ...], ...]]]
_M = TypeVar("_M", RhythmMotif, MelodyFragment, MelodyRhythmMotif, DrumPattern, BassPatternMotif, TransitionMotif)


def _index(kind: str, motifs: Iterable[_M]) -> Mapping[str, _M]:
    index: dict[str, _M] = {}
    for motif in motifs:
        if motif.id in index:
            raise MotifLibraryError(f"Duplicate {kind} motif id: {motif.id}")
        index[motif.id] = motif
    return MappingProxyType(index)


def _freeze_chords(chords: Mapping[str, Mapping[str, Sequence[Sequence[str]]]]) -> ChordTable:
    return MappingProxyType(
        {
            key: MappingProxyType(
                {tag: tuple(tuple(progression) for progression in progressions) for tag, progressions in by_tag.items()}
            )
            for key, by_tag in chords.items()
        }
    )


@dataclass(frozen=True)
class MotifLibrary:
    """Read-only, tag-indexed motif tables shared by every generation call."""

    chords: ChordTable
    rhythms: tuple[RhythmMotif, ...]
    melodies: tuple[MelodyFragment, ...]
    melody_rhythms: tuple[MelodyRhythmMotif, ...]
    drums: tuple[DrumPattern, ...]
    bass_patterns: tuple[BassPatternMotif, ...]
    transitions: tuple[TransitionMotif, ...]
    techniques: TechniqueLibrary = TechniqueLibrary()
    rhythm_by_id: Mapping[str, RhythmMotif] = field(init=False, repr=False, compare=False)
    melody_by_id: Mapping[str, MelodyFragment] = field(init=False, repr=False, compare=False)
    melody_rhythm_by_id: Mapping[str, MelodyRhythmMotif] = field(init=False, repr=False, compare=False)
    drum_by_id: Mapping[str, DrumPattern] = field(init=False, repr=False, compare=False)
    bass_by_id: Mapping[str, BassPatternMotif] = field(init=False, repr=False, compare=False)
    transition_by_id: Mapping[str, TransitionMotif] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "chords", _freeze_chords(self.chords))
        object.__setattr__(self, "rhythm_by_id", _index("rhythm", self.rhythms))
        object.__setattr__(self, "melody_by_id", _index("melody", self.melodies))
        object.__setattr__(self, "melody_rhythm_by_id", _index("melody rhythm", self.melody_rhythms))
        object.__setattr__(self, "drum_by_id", _index("drum", self.drums))
        object.__setattr__(self, "bass_by_id", _index("bass", self.bass_patterns))
        object.__setattr__(self, "transition_by_id", _index("transition", self.transitions))

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self.chords)

    def progressions_for_key(self, key: str) -> Mapping[str, tuple[tuple[str, ...], ...]]:
        try:
            return self.chords[key]
        except KeyError as exc:
            raise MotifLibraryError(f"No chord motifs for key {key}") from exc

    def rhythm(self, motif_id: Optional[str]) -> Optional[RhythmMotif]:
        return self.rhythm_by_id.get(motif_id) if motif_id else None

    def melody(self, motif_id: Optional[str]) -> Optional[MelodyFragment]:
        return self.melody_by_id.get(motif_id) if motif_id else None

    def melody_rhythm(self, motif_id: Optional[str]) -> Optional[MelodyRhythmMotif]:
        return self.melody_rhythm_by_id.get(motif_id) if motif_id else None

    def drum(self, motif_id: Optional[str]) -> Optional[DrumPattern]:
        return self.drum_by_id.get(motif_id) if motif_id else None

    def bass(self, motif_id: Optional[str]) -> Optional[BassPatternMotif]:
        return self.bass_by_id.get(motif_id) if motif_id else None

    def summary(self) -> dict[str, int]:
        return {
            "keys": len(self.chords),
            "progressions": sum(len(p) for by_tag in self.chords.values() for p in by_tag.values()),
            "rhythms": len(self.rhythms),
            "melodies": len(self.melodies),
            "melodyRhythms": len(self.melody_rhythms),
            "drums": len(self.drums),
            "bassPatterns": len(self.bass_patterns),
            "transitions": len(self.transitions),
            "dutySweeps": len(self.techniques.duty_sweeps),
            "gainProfiles": len(self.techniques.gain_profiles),
        }


@lru_cache(maxsize=1)
def default_library() -> MotifLibrary:
    """Build the curated library once per process."""

    from . import builtin_motifs

    library = builtin_motifs.build_library()
    _LOGGER.debug("Loaded built-in motif library: %s", library.summary())
    return library
