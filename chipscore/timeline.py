from __future__ import annotations

from typing import Sequence

from .models import (
    Diagnostics,
    Event,
    LoopWindow,
    MotifUsage,
    SectionMotifPlan,
    StructurePlan,
    TimedEvent,
    VoiceAllocationEntry,
)
from .realization import VoiceAllocation

LOOP_WRAP_WINDOW_SECONDS = 0.1


def beats_to_seconds(beats: float, bpm: float) -> float:
    return beats * 60.0 / bpm


def compute_loop_window(events: Sequence[Event]) -> LoopWindow:
    """Events near the loop seam: the first and last 0.1 s of the timeline."""

    if not events:
        return LoopWindow()
    last_time = events[-1].time
    head = tuple(event for event in events if event.time < LOOP_WRAP_WINDOW_SECONDS)
    tail = tuple(event for event in events if last_time - event.time < LOOP_WRAP_WINDOW_SECONDS)
    return LoopWindow(head=head, tail=tail)


def finalize_timeline(
    plan: StructurePlan,
    events: Sequence[TimedEvent],
    voice_allocation: Sequence[VoiceAllocation],
    usage: MotifUsage,
    motif_plan: Sequence[SectionMotifPlan],
) -> tuple[list[Event], Diagnostics]:
    finalized = [
        Event(
            time=beats_to_seconds(event.beat_time, plan.bpm),
            channel=event.channel,
            command=event.command,
            data=event.data,
        )
        for event in events
    ]
    finalized.sort(key=lambda event: event.time)

    diagnostics = Diagnostics(
        voice_allocation=tuple(
            VoiceAllocationEntry(
                time=beats_to_seconds(entry.beat_time, plan.bpm),
                channel=entry.channel,
                active_count=entry.active_count,
            )
            for entry in voice_allocation
        ),
        loop_window=compute_loop_window(finalized),
        motif_usage=usage,
        section_motif_plan=tuple(motif_plan),
    )
    return finalized, diagnostics
