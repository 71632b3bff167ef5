"""Pipeline invariant checks for stage outputs."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Union

import librosa

from .config import PipelineConfig
from .models import MidiEvent, MidiEventKind, NoteEventFrame, NoteEventTime
from .timebase import resolve_min_note_len

logger = logging.getLogger(__name__)

_HZ_REL_TOL = 1e-6

NoteLike = Union[NoteEventFrame, NoteEventTime]


def _result(violations: List[str], strict: bool, pipeline_logger: Optional[Any], what: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {"status": "fail" if violations else "pass"}
    if violations:
        result["violations"] = violations
        if pipeline_logger is not None:
            pipeline_logger.log_event("contract", "violation", {"what": what, "violations": violations})
        logger.warning("Contract violations in %s: %s", what, violations)
        if strict:
            raise AssertionError(f"Pipeline Contract Violation: {'; '.join(violations)}")
    return result


def validate_notes(
    notes: Sequence[NoteLike],
    config: Optional[PipelineConfig] = None,
    strict: bool = False,
    pipeline_logger: Optional[Any] = None,
) -> Dict[str, Any]:
    """Check decoded notes against the decoder's guarantees.

    Args:
        notes: frame- or time-domain note events.
        config: PipelineConfig the notes were decoded with.
        strict: If True, raise AssertionError on failure.
        pipeline_logger: Optional PipelineLogger to record violations.

    Returns:
        {"status": "pass"} or {"status": "fail", "violations": ["..."]}
    """
    cfg = (config or PipelineConfig()).decoder
    min_note_len = resolve_min_note_len(cfg)
    violations: List[str] = []

    for idx, note in enumerate(notes):
        if not 0 <= note.pitch_midi <= 127:
            violations.append(f"note {idx}: pitch {note.pitch_midi} outside MIDI range")
            continue

        pitch_hz = float(librosa.midi_to_hz(note.pitch_midi))
        if cfg.min_freq_hz is not None and pitch_hz < cfg.min_freq_hz * (1 - _HZ_REL_TOL):
            violations.append(f"note {idx}: {pitch_hz:.2f} Hz below min_freq_hz {cfg.min_freq_hz}")
        if cfg.max_freq_hz is not None and pitch_hz > cfg.max_freq_hz * (1 + _HZ_REL_TOL):
            violations.append(f"note {idx}: {pitch_hz:.2f} Hz above max_freq_hz {cfg.max_freq_hz}")

        if not 0.0 <= note.amplitude <= 1.0:
            violations.append(f"note {idx}: amplitude {note.amplitude} outside [0, 1]")

        if isinstance(note, NoteEventFrame):
            if note.start_frame < 0:
                violations.append(f"note {idx}: negative start frame {note.start_frame}")
            if note.duration_frames <= min_note_len:
                violations.append(
                    f"note {idx}: {note.duration_frames} frames is not longer than min_note_len {min_note_len}"
                )
            if note.pitch_bends is not None and len(note.pitch_bends) != note.duration_frames:
                violations.append(
                    f"note {idx}: {len(note.pitch_bends)} bends for {note.duration_frames} frames"
                )
        else:
            if note.start_time_seconds < 0:
                violations.append(f"note {idx}: negative start time {note.start_time_seconds}")
            if note.duration_seconds < 0:
                violations.append(f"note {idx}: negative duration {note.duration_seconds}")

    return _result(violations, strict, pipeline_logger, "notes")


def validate_midi_events(
    events: Sequence[MidiEvent],
    strict: bool = False,
    pipeline_logger: Optional[Any] = None,
) -> Dict[str, Any]:
    """
    Check a scheduled event stream: ticks never go backwards, deltas add up
    to the absolute ticks, and no key is struck again while it is still
    sounding on its channel.
    """
    violations: List[str] = []

    running_tick = 0
    previous_tick = 0
    for idx, ev in enumerate(events):
        if ev.tick < previous_tick:
            violations.append(f"event {idx}: tick {ev.tick} after {previous_tick}")
        previous_tick = ev.tick
        if ev.delta is not None:
            running_tick += ev.delta
            if running_tick != ev.tick:
                violations.append(f"event {idx}: deltas sum to {running_tick}, tick is {ev.tick}")

    sounding: Dict[tuple, int] = defaultdict(int)
    for idx, ev in enumerate(events):
        key = (ev.channel, ev.note)
        if ev.kind is MidiEventKind.NOTE_ON:
            if sounding[key] > 0:
                violations.append(
                    f"event {idx}: key {ev.note} re-struck at tick {ev.tick} before its release"
                )
            sounding[key] += 1
        elif ev.kind is MidiEventKind.NOTE_OFF:
            sounding[key] = max(0, sounding[key] - 1)

    return _result(violations, strict, pipeline_logger, "midi_events")
