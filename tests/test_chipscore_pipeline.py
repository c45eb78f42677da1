from __future__ import annotations

import json
import logging

import pytest

from chipscore import InvalidOptionsError, generate_composition, run_pipeline
from chipscore.library import default_library
from chipscore.logging_utils import DEBUG_ENV
from chipscore.models import PipelineResult


def _note_events(result: PipelineResult, channel: str) -> list[str]:
    return [event.command for event in result.events_for(channel) if event.command != "setParam"]


def test_upbeat_medium_loop_has_expected_shape() -> None:
    result = run_pipeline({"mood": "upbeat", "tempo": "medium", "lengthInMeasures": 16, "seed": 42})
    meta = result.meta
    assert "noteOn" in _note_events(result, "square1")
    assert meta.loop_info.total_beats == 64
    assert meta.loop_info.loop_end_beat == 64
    assert meta.loop_info.total_duration == pytest.approx(64 * 60 / meta.bpm)
    assert meta.loop_info.loop_end_time == pytest.approx(meta.loop_info.total_duration)
    assert 105 <= meta.bpm <= 135
    assert meta.key == "G_Major"
    assert all(event.time <= meta.loop_info.total_duration + 1e-9 for event in result.events)


def test_neighbouring_seeds_diverge() -> None:
    first = run_pipeline({"seed": 12345})
    second = run_pipeline({"seed": 12346})
    assert first.digest() != second.digest()


def test_generation_is_deterministic() -> None:
    options = {"mood": "tense", "tempo": "fast", "lengthInMeasures": 24, "seed": 777}
    assert run_pipeline(options).to_json() == run_pipeline(options).to_json()
    assert generate_composition(options).digest() == run_pipeline(options).digest()


def test_replay_options_reproduce_the_result() -> None:
    result = run_pipeline({"mood": "sad", "stylePreset": "lofiChillhop", "seed": 5})
    replayed = run_pipeline(result.meta.replay_options)
    assert replayed.digest() == result.digest()
    assert run_pipeline(result.meta.replay_options.model_dump(by_alias=True)).digest() == result.digest()


def test_injected_library_matches_default() -> None:
    options = {"seed": 3, "lengthInMeasures": 8}
    assert run_pipeline(options, library=default_library()).digest() == run_pipeline(options).digest()


@pytest.mark.parametrize("mood", ["upbeat", "sad", "tense", "peaceful"])
@pytest.mark.parametrize("preset", [None, "minimalTechno", "progressiveHouse", "retroLoopwave", "breakbeatJungle", "lofiChillhop"])
def test_note_events_alternate_per_channel(mood: str, preset: str | None) -> None:
    result = run_pipeline({"mood": mood, "stylePreset": preset, "lengthInMeasures": 16, "seed": 99})
    times = [event.time for event in result.events]
    assert times == sorted(times)
    for channel in ("square1", "square2", "triangle", "noise"):
        commands = _note_events(result, channel)
        assert commands[::2] == ["noteOn"] * len(commands[::2])
        assert commands[1::2] == ["noteOff"] * len(commands[1::2])
        assert len(commands) % 2 == 0


def test_noise_payloads_stay_on_the_noise_channel() -> None:
    result = run_pipeline({"tempo": "fast", "seed": 8, "lengthInMeasures": 16})
    for event in result.events:
        if event.command != "noteOn":
            continue
        if event.channel == "noise":
            assert event.data.kind == "noise"
        else:
            assert event.data.kind == "pitch"


def test_harmonic_static_override_is_reported() -> None:
    result = run_pipeline({"mood": "peaceful", "seed": 5, "styleOverrides": {"harmonicStatic": True}})
    assert result.meta.style_intent.harmonic_static
    assert result.meta.replay_options.style_overrides.harmonic_static is True


def test_break_insertion_dips_before_the_eighth_measure() -> None:
    result = run_pipeline(
        {"tempo": "medium", "lengthInMeasures": 16, "seed": 42, "styleOverrides": {"breakInsertion": True}}
    )
    seconds_per_beat = 60 / result.meta.bpm
    noise_gains = [
        (event.time, event.data.value)
        for event in result.events_for("noise")
        if event.command == "setParam" and event.data.param == "gain"
    ]
    assert any(time == pytest.approx(27.75 * seconds_per_beat) and value == 0.45 for time, value in noise_gains)
    assert any(time == pytest.approx(29.0 * seconds_per_beat) and value == 0.78 for time, value in noise_gains)


def test_json_uses_camel_case() -> None:
    payload = json.loads(run_pipeline({"lengthInMeasures": 4, "seed": 1}).to_json())
    assert set(payload) == {"events", "diagnostics", "meta"}
    assert "loopInfo" in payload["meta"]
    assert "replayOptions" in payload["meta"]
    assert "voiceAllocation" in payload["diagnostics"]
    assert "sectionMotifPlan" in payload["diagnostics"]
    assert payload["events"][0]["command"] in ("noteOn", "noteOff", "setParam")
    assert PipelineResult.model_validate_json(json.dumps(payload)).digest() == run_pipeline(
        {"lengthInMeasures": 4, "seed": 1}
    ).digest()


def test_diagnostics_cover_every_section() -> None:
    result = run_pipeline({"mood": "sad", "lengthInMeasures": 32, "seed": 10})
    plan_ids = [entry.section_id for entry in result.diagnostics.section_motif_plan]
    assert plan_ids == ["Intro1", "A1", "B1", "A2"]
    usage = result.diagnostics.motif_usage
    assert sum(usage.bass.values()) == 32
    assert usage.transitions


@pytest.mark.parametrize("payload", [{"mood": "angry"}, {"lengthInMeasures": -4}, {"seed": "abc"}])
def test_invalid_options_are_rejected(payload: dict) -> None:
    with pytest.raises(InvalidOptionsError):
        run_pipeline(payload)


def test_pipeline_logs_each_phase(caplog, monkeypatch) -> None:
    monkeypatch.delenv(DEBUG_ENV, raising=False)
    caplog.set_level(logging.DEBUG, logger="chipscore")
    run_pipeline({"lengthInMeasures": 8, "seed": 3})
    messages = [record.getMessage() for record in caplog.records if record.name == "chipscore.pipeline"]
    for phase in ("structure", "selection", "realization", "techniques", "timeline"):
        assert any(message.startswith(f"{phase} done in") for message in messages)
    assert not any(message.startswith("Sections:") for message in messages)
    assert sum(1 for record in caplog.records if record.levelno == logging.INFO) == 1


def test_debug_mode_logs_the_plan(caplog, monkeypatch) -> None:
    monkeypatch.setenv(DEBUG_ENV, "1")
    caplog.set_level(logging.DEBUG, logger="chipscore")
    result = run_pipeline({"lengthInMeasures": 8, "seed": 3})
    messages = [record.getMessage() for record in caplog.records if record.name == "chipscore.pipeline"]
    sections = [message for message in messages if message.startswith("Sections:")]
    assert len(sections) == 1
    for plan in result.diagnostics.section_motif_plan:
        assert plan.section_id in sections[0]
    assert any(result.meta.voice_arrangement.id in message for message in messages)
