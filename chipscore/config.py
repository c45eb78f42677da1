from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import InvalidOptionsError

_LOGGER = logging.getLogger("chipscore.config")

Mood = Literal["upbeat", "sad", "tense", "peaceful"]
TempoSetting = Literal["slow", "medium", "fast"]
StylePreset = Literal[
    "minimalTechno",
    "progressiveHouse",
    "retroLoopwave",
    "breakbeatJungle",
    "lofiChillhop",
]
Texture = Literal["steady", "broken", "arpeggio"]
Channel = Literal["square1", "square2", "triangle", "noise"]
VoiceRole = Literal["melody", "melodyAlt", "bass", "bassAlt", "accompaniment", "pad"]
ArrangementId = Literal[
    "standard",
    "swapped",
    "dualBass",
    "bassLed",
    "layeredBass",
    "minimal",
    "breakLayered",
    "lofiPadLead",
    "retroPulse",
]
DrumInstrument = Literal["K", "S", "H", "O", "T", "N"]
FunctionalTag = Literal["start", "middle", "end"]

PITCHED_CHANNELS: tuple[Channel, ...] = ("square1", "square2", "triangle")
ALL_CHANNELS: tuple[Channel, ...] = ("square1", "square2", "triangle", "noise")
STYLE_FLAGS: tuple[str, ...] = (
    "texture_focus",
    "loop_centric",
    "gradual_build",
    "harmonic_static",
    "percussive_layering",
    "break_insertion",
    "filter_motion",
    "syncopation_bias",
    "atmos_pad",
)

DEFAULT_LENGTH_IN_MEASURES = 32
DEFAULT_SEED = 42
DEFAULT_SECTION_REPEAT_BIAS = 0.3

_TEMPO_BPM_BASE: Mapping[TempoSetting, int] = MappingProxyType(
    {
        "slow": 90,
        "medium": 120,
        "fast": 150,
    }
)


def tempo_to_bpm_base(value: TempoSetting) -> int:
    try:
        return _TEMPO_BPM_BASE[value]
    except KeyError as exc:
        raise InvalidOptionsError(f"Unknown tempo label: {value!r}") from exc


class CamelModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class StyleIntent(CamelModel):
    """Nine boolean flags that bias every downstream selection."""

    texture_focus: bool = False
    loop_centric: bool = False
    gradual_build: bool = False
    harmonic_static: bool = False
    percussive_layering: bool = False
    break_insertion: bool = False
    filter_motion: bool = False
    syncopation_bias: bool = False
    atmos_pad: bool = False

    def merged(self, patch: Mapping[str, bool]) -> "StyleIntent":
        if not patch:
            return self
        return self.model_copy(update=dict(patch))

    def enabled(self) -> tuple[str, ...]:
        return tuple(name for name in STYLE_FLAGS if getattr(self, name))


class StyleOverrides(CamelModel):
    """Explicit per-flag overrides; unset flags leave the inferred value alone."""

    texture_focus: Optional[bool] = None
    loop_centric: Optional[bool] = None
    gradual_build: Optional[bool] = None
    harmonic_static: Optional[bool] = None
    percussive_layering: Optional[bool] = None
    break_insertion: Optional[bool] = None
    filter_motion: Optional[bool] = None
    syncopation_bias: Optional[bool] = None
    atmos_pad: Optional[bool] = None

    def explicit(self) -> dict[str, bool]:
        return self.model_dump(exclude_none=True)


class CompositionOptions(CamelModel):
    """Input knobs for one generation call."""

    mood: Mood = "upbeat"
    tempo: TempoSetting = "medium"
    length_in_measures: int = Field(default=DEFAULT_LENGTH_IN_MEASURES, gt=0)
    seed: int = Field(default=DEFAULT_SEED, ge=0, le=0xFFFFFFFF)
    style_preset: Optional[StylePreset] = None
    style_overrides: Optional[StyleOverrides] = None
    section_repeat_bias: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def total_beats(self) -> int:
        return self.length_in_measures * 4

    @property
    def repeat_bias(self) -> float:
        if self.section_repeat_bias is None:
            return DEFAULT_SECTION_REPEAT_BIAS
        return self.section_repeat_bias

    def explicit_overrides(self) -> dict[str, bool]:
        if self.style_overrides is None:
            return {}
        return self.style_overrides.explicit()


OptionsInput = CompositionOptions | Mapping[str, Any] | None


def parse_options(payload: OptionsInput = None) -> CompositionOptions:
    """Parse an options payload, raising InvalidOptionsError on failure."""

    if isinstance(payload, CompositionOptions):
        return payload
    try:
        return CompositionOptions.model_validate(dict(payload or {}))
    except ValidationError as exc:
        _LOGGER.warning("Failed to parse composition options: %s", exc, exc_info=True)
        raise InvalidOptionsError(str(exc)) from exc
