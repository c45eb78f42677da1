from __future__ import annotations

import pytest
from pydantic import ValidationError

from chipscore.config import (
    DEFAULT_SECTION_REPEAT_BIAS,
    CompositionOptions,
    StyleIntent,
    StyleOverrides,
    parse_options,
    tempo_to_bpm_base,
)
from chipscore.errors import InvalidOptionsError


def test_defaults() -> None:
    options = parse_options()
    assert options.mood == "upbeat"
    assert options.tempo == "medium"
    assert options.length_in_measures == 32
    assert options.seed == 42
    assert options.style_preset is None
    assert options.repeat_bias == pytest.approx(DEFAULT_SECTION_REPEAT_BIAS)
    assert options.total_beats == 128


def test_accepts_camel_case_and_snake_case() -> None:
    camel = parse_options({"lengthInMeasures": 16, "stylePreset": "lofiChillhop", "seed": 7})
    snake = parse_options({"length_in_measures": 16, "style_preset": "lofiChillhop", "seed": 7})
    assert camel == snake
    assert camel.length_in_measures == 16


def test_parse_options_passes_through_models() -> None:
    options = CompositionOptions(mood="sad")
    assert parse_options(options) is options


@pytest.mark.parametrize(
    "payload",
    [
        {"mood": "angry"},
        {"tempo": "presto"},
        {"lengthInMeasures": 0},
        {"seed": -1},
        {"seed": 2**32},
        {"sectionRepeatBias": 1.5},
        {"stylePreset": "polka"},
        {"unknownKnob": True},
        {"styleOverrides": {"notAFlag": True}},
    ],
)
def test_invalid_options_raise(payload: dict) -> None:
    with pytest.raises(InvalidOptionsError):
        parse_options(payload)


def test_options_are_frozen() -> None:
    options = parse_options()
    with pytest.raises(ValidationError):
        options.seed = 1  # type: ignore[misc]


def test_overrides_report_only_explicit_flags() -> None:
    options = parse_options({"styleOverrides": {"harmonicStatic": True, "atmosPad": False}})
    assert options.explicit_overrides() == {"harmonic_static": True, "atmos_pad": False}
    assert StyleOverrides().explicit() == {}


def test_style_intent_merge_and_enabled() -> None:
    intent = StyleIntent().merged({"loop_centric": True, "atmos_pad": True})
    assert intent.enabled() == ("loop_centric", "atmos_pad")
    assert StyleIntent().merged({}) == StyleIntent()


def test_serialization_uses_camel_case() -> None:
    dumped = parse_options({"lengthInMeasures": 8}).model_dump(by_alias=True)
    assert dumped["lengthInMeasures"] == 8
    assert "length_in_measures" not in dumped


def test_tempo_base() -> None:
    assert tempo_to_bpm_base("slow") == 90
    assert tempo_to_bpm_base("medium") == 120
    assert tempo_to_bpm_base("fast") == 150
    with pytest.raises(InvalidOptionsError):
        tempo_to_bpm_base("presto")  # type: ignore[arg-type]
