from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, model_validator

from .config import (
    ArrangementId,
    Channel,
    CompositionOptions,
    DrumInstrument,
    Mood,
    StyleIntent,
    TempoSetting,
    Texture,
    VoiceRole,
    CamelModel,
)
from .errors import InvalidEventError

Command = Literal["noteOn", "noteOff", "setParam"]
NoiseMode = Literal["long_period", "short_period"]

# =============================================================================
# PART 1: Plan
# =============================================================================


@dataclass(frozen=True, slots=True)
class SectionDefinition:
    """One labeled block of measures."""

    id: str
    start_measure: int
    measures: int
    chord_progression: tuple[str, ...]
    template_id: str
    occurrence_index: int
    texture: Texture
    phrase_length: int

    @property
    def end_measure(self) -> int:
        return self.start_measure + self.measures

    def contains_measure(self, measure: int) -> bool:
        return self.start_measure <= measure < self.end_measure


class Voice(CamelModel):
    role: VoiceRole
    channel: Channel
    priority: float = Field(default=1.0, ge=0.0, le=1.0)
    octave_offset: int = 0
    seed_offset: int = 0


class VoiceArrangement(CamelModel):
    id: ArrangementId
    voices: tuple[Voice, ...]

    def voice_for_role(self, role: VoiceRole) -> Optional[Voice]:
        for voice in self.voices:
            if voice.role == role:
                return voice
        return None


@dataclass(frozen=True, slots=True)
class TechniqueStrategy:
    """Per-note probabilities for accompaniment ornaments."""

    echo_probability: float
    detune_probability: float
    fast_arpeggio_probability: float


@dataclass(frozen=True, slots=True)
class StructurePlan:
    bpm: int
    key: str
    scale_degrees: tuple[int, ...]
    sections: tuple[SectionDefinition, ...]
    technique_strategy: TechniqueStrategy
    style_intent: StyleIntent
    voice_arrangement: VoiceArrangement

    @property
    def total_measures(self) -> int:
        return sum(section.measures for section in self.sections)

    @property
    def total_beats(self) -> int:
        return self.total_measures * 4

    def section_for_measure(self, measure: int) -> Optional[SectionDefinition]:
        for section in self.sections:
            if section.contains_measure(measure):
                return section
        return None


# =============================================================================
# PART 2: Notes and hits
# =============================================================================


@dataclass(frozen=True, slots=True)
class AbstractNote:
    """Scale-degree note before pitch resolution."""

    channel_role: VoiceRole
    start_beat: float
    duration_beats: float
    degree: int
    velocity: int
    section_id: str
    midi_override: Optional[int] = None


@dataclass(frozen=True, slots=True)
class MidiNote:
    channel_role: VoiceRole
    start_beat: float
    duration_beats: float
    degree: int
    velocity: int
    section_id: str
    midi: int
    detune_cents: Optional[float] = None

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration_beats


@dataclass(frozen=True, slots=True)
class DrumHit:
    start_beat: float
    duration_beats: float
    instrument: DrumInstrument
    section_id: str


# =============================================================================
# PART 3: Event payloads
# =============================================================================


class Slide(CamelModel):
    target_midi: int = Field(ge=0, le=127)
    duration_seconds: float = Field(gt=0.0)
    curve: Literal["linear", "exponential"] = "linear"


class PitchNoteOn(CamelModel):
    kind: Literal["pitch"] = "pitch"
    midi: int = Field(ge=0, le=127)
    velocity: int = Field(ge=0, le=127)
    detune_cents: Optional[float] = None
    slide: Optional[Slide] = None


class NoiseNoteOn(CamelModel):
    kind: Literal["noise"] = "noise"
    noise_mode: NoiseMode
    velocity: int = Field(ge=0, le=127)
    amplitude: float = Field(ge=0.0, le=1.0)
    release_seconds: float = Field(gt=0.0)
    decay_seconds: float = Field(gt=0.0)
    period_index: int = Field(ge=0, le=15)


class NoteOff(CamelModel):
    kind: Literal["off"] = "off"
    release_seconds: Optional[float] = None


class SetParam(CamelModel):
    kind: Literal["param"] = "param"
    param: str
    value: float
    ramp_duration: Optional[float] = None
    curve: Optional[Literal["linear", "exponential"]] = None


EventData = Annotated[
    Union[PitchNoteOn, NoiseNoteOn, NoteOff, SetParam],
    Field(discriminator="kind"),
]

_COMMAND_KINDS: dict[Command, tuple[str, ...]] = {
    "noteOn": ("pitch", "noise"),
    "noteOff": ("off",),
    "setParam": ("param",),
}


def check_payload(channel: Channel, command: Command, data: object) -> None:
    kind = getattr(data, "kind", None)
    if kind not in _COMMAND_KINDS[command]:
        raise InvalidEventError(f"{command} on {channel} cannot carry a {kind!r} payload")
    if kind == "pitch" and channel == "noise":
        raise InvalidEventError("Pitched note-on payload on the noise channel")
    if kind == "noise" and channel != "noise":
        raise InvalidEventError(f"Noise note-on payload on pitched channel {channel}")


@dataclass(slots=True)
class TimedEvent:
    """Beat-clocked event; lives only between realization and finalization."""

    beat_time: float
    channel: Channel
    command: Command
    data: Union[PitchNoteOn, NoiseNoteOn, NoteOff, SetParam]

    def __post_init__(self) -> None:
        check_payload(self.channel, self.command, self.data)


# =============================================================================
# PART 4: Output
# =============================================================================


class Event(CamelModel):
    time: float = Field(ge=0.0)
    channel: Channel
    command: Command
    data: EventData

    @model_validator(mode="after")
    def _payload_matches_channel(self) -> "Event":
        check_payload(self.channel, self.command, self.data)
        return self


class VoiceAllocationEntry(CamelModel):
    time: float
    channel: Channel
    active_count: int


class LoopWindow(CamelModel):
    head: tuple[Event, ...] = ()
    tail: tuple[Event, ...] = ()


class SectionMotifPlan(CamelModel):
    section_id: str
    template_id: str
    occurrence_index: int
    primary_rhythm: str
    primary_melody: str
    primary_melody_rhythm: str
    reprises_hook: bool = False


class MotifUsage(CamelModel):
    rhythm: dict[str, int] = Field(default_factory=dict)
    melody: dict[str, int] = Field(default_factory=dict)
    drums: dict[str, int] = Field(default_factory=dict)
    melody_rhythm: dict[str, int] = Field(default_factory=dict)
    bass: dict[str, int] = Field(default_factory=dict)
    transitions: dict[str, int] = Field(default_factory=dict)


class Diagnostics(CamelModel):
    voice_allocation: tuple[VoiceAllocationEntry, ...] = ()
    loop_window: LoopWindow = LoopWindow()
    motif_usage: MotifUsage = MotifUsage()
    section_motif_plan: tuple[SectionMotifPlan, ...] = ()


class LoopInfo(CamelModel):
    loop_start_beat: float
    loop_end_beat: float
    loop_start_time: float
    loop_end_time: float
    total_beats: float
    total_duration: float


class CompositionMeta(CamelModel):
    bpm: int
    key: str
    seed: int
    mood: Mood
    tempo: TempoSetting
    length_in_measures: int
    style_intent: StyleIntent
    voice_arrangement: VoiceArrangement
    loop_info: LoopInfo
    replay_options: CompositionOptions


class PipelineResult(CamelModel):
    events: tuple[Event, ...]
    diagnostics: Diagnostics
    meta: CompositionMeta

    def to_json(self, *, indent: Optional[int] = None) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)

    def digest(self) -> str:
        """SHA-256 of the canonical serialization."""

        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    def events_for(self, channel: Channel) -> list[Event]:
        return [event for event in self.events if event.channel == channel]


@dataclass(slots=True)
class MotifSelection:
    """Everything the selector hands to realization."""

    tracks: dict[VoiceRole, list[MidiNote]]
    drums: list[DrumHit]
    motif_usage: MotifUsage
    section_motif_plan: list[SectionMotifPlan] = field(default_factory=list)
