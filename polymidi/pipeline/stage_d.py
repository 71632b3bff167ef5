# polymidi/pipeline/stage_d.py
"""
Stage D: MIDI event scheduling.

Turns time-domain note events into tick-stamped channel events, in the
order a MIDI consumer must receive them, then delta-encodes them.
Serialization to bytes lives in ``midi_export``.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Tuple

from .config import MidiConfig, PipelineConfig, validate_midi_config
from .constants import (
    DEFAULT_BPM,
    DEFAULT_TICKS_PER_BEAT,
    MAX_MIDI_VELOCITY,
    PITCH_BEND_MAX,
    PITCH_BEND_MIN,
)
from .errors import ConfigError, PitchBendOverflowError
from .models import MidiEvent, MidiEventKind, NoteEventTime

logger = logging.getLogger(__name__)


def ticks_per_second(bpm: float, ticks_per_beat: int) -> float:
    if not math.isfinite(bpm) or bpm <= 0:
        raise ConfigError(f"bpm must be a positive finite number, got {bpm!r}")
    if ticks_per_beat <= 0:
        raise ConfigError(f"ticks_per_beat must be > 0, got {ticks_per_beat!r}")
    return ticks_per_beat * bpm / 60.0


def _round_tick(x: float) -> int:
    # halves round up, unlike Python's round()
    return int(math.floor(x + 0.5))


def amplitude_to_velocity(amplitude: float) -> int:
    """Map a 0..1 amplitude to MIDI velocity 1..127 (0 would read as a note-off)."""
    vel = int(float(amplitude) * MAX_MIDI_VELOCITY)
    return max(1, min(MAX_MIDI_VELOCITY, vel))


def bend_to_midi(bend: int, overflow: str = "clamp") -> int:
    """
    Signed bend offset -> signed 14-bit pitch wheel value (center 0).

    The wire value is this plus 0x2000. Out-of-range bends are saturated
    (``overflow="clamp"``) or rejected (``overflow="error"``).
    """
    bend = int(bend)
    if PITCH_BEND_MIN <= bend <= PITCH_BEND_MAX:
        return bend
    if overflow == "error":
        raise PitchBendOverflowError(
            f"pitch bend {bend} outside [{PITCH_BEND_MIN}, {PITCH_BEND_MAX}]"
        )
    return max(PITCH_BEND_MIN, min(PITCH_BEND_MAX, bend))


def _release_ticks(spans: List[Tuple[int, int, int]]) -> List[int]:
    """
    End tick for each ``(pitch, start_tick, end_tick)`` span.

    Start and duration are rounded separately, so a note can end one tick
    after the next NoteOn of its key. Such releases are pulled back onto
    that NoteOn's tick, where the same-tick swap puts them first.
    """
    ends = [end for _, _, end in spans]
    order = sorted(range(len(spans)), key=lambda i: (spans[i][0], spans[i][1]))
    for cur, nxt in zip(order, order[1:]):
        pitch, _, _ = spans[cur]
        next_pitch, next_start, _ = spans[nxt]
        if pitch == next_pitch and ends[cur] > next_start:
            ends[cur] = next_start
    return ends


def schedule_note_events(
    notes: Iterable[NoteEventTime],
    bpm: float = DEFAULT_BPM,
    ticks_per_beat: int = DEFAULT_TICKS_PER_BEAT,
    channel: int = 0,
    bend_overflow: str = "clamp",
) -> List[MidiEvent]:
    """
    Build the absolute-tick event list for ``notes``, sorted and tie-broken.

    Per note: a NoteOn, a NoteOff ``round(duration * ticks_per_second)``
    ticks later (never past the key's next NoteOn), and one PitchBend per
    bend sample spread evenly over the note. A first bend landing on the
    NoteOn tick is pushed one tick later.
    """
    tps = ticks_per_second(bpm, ticks_per_beat)

    notes = list(notes)
    spans: List[Tuple[int, int, int]] = []
    for note in notes:
        if note.start_time_seconds < 0 or note.duration_seconds < 0:
            raise ValueError(
                f"note at {note.start_time_seconds}s with duration {note.duration_seconds}s "
                "cannot be scheduled"
            )
        start_tick = _round_tick(note.start_time_seconds * tps)
        duration_ticks = _round_tick(note.duration_seconds * tps)
        spans.append((note.pitch_midi, start_tick, start_tick + duration_ticks))
    end_ticks = _release_ticks(spans)

    events: List[MidiEvent] = []
    for note, (_, start_tick, end_tick), release_tick in zip(notes, spans, end_ticks):
        if release_tick != end_tick:
            logger.debug(
                "Stage D: key %d released at tick %d instead of %d, re-struck there",
                note.pitch_midi, release_tick, end_tick,
            )
        duration_ticks = end_tick - start_tick
        velocity = amplitude_to_velocity(note.amplitude)

        events.append(MidiEvent(start_tick, MidiEventKind.NOTE_ON, channel, note.pitch_midi, velocity))
        events.append(MidiEvent(release_tick, MidiEventKind.NOTE_OFF, channel, note.pitch_midi, 0))

        if note.pitch_bends:
            n_bends = len(note.pitch_bends)
            for i, bend in enumerate(note.pitch_bends):
                tick = start_tick + _round_tick(i * duration_ticks / n_bends)
                if i == 0 and tick == start_tick:
                    tick += 1
                events.append(
                    MidiEvent(
                        tick,
                        MidiEventKind.PITCH_BEND,
                        channel,
                        note.pitch_midi,
                        bend=bend_to_midi(bend, bend_overflow),
                    )
                )

    # list.sort is stable: equal ticks keep insertion order
    events.sort(key=lambda e: e.tick)
    resolve_same_tick_retriggers(events)

    logger.debug("Stage D: scheduled %d MIDI events at %.1f ticks/s", len(events), tps)
    return events


def resolve_same_tick_retriggers(events: List[MidiEvent]) -> None:
    """
    In place: wherever a NoteOff directly follows a NoteOn on the same tick,
    swap them so the release is emitted first.

    One forward pass; a NoteOn followed by several same-tick NoteOffs
    moves behind all of them.
    """
    for i in range(len(events) - 1):
        cur, nxt = events[i], events[i + 1]
        if (
            cur.kind is MidiEventKind.NOTE_ON
            and nxt.kind is MidiEventKind.NOTE_OFF
            and cur.tick == nxt.tick
        ):
            events[i], events[i + 1] = nxt, cur


def to_delta_events(events: Iterable[MidiEvent]) -> List[MidiEvent]:
    """Fill in ``delta`` for tick-sorted events; the first delta is its absolute tick."""
    out: List[MidiEvent] = []
    previous_tick = 0
    for ev in events:
        delta = ev.tick - previous_tick
        if delta < 0:
            raise ValueError(f"events are not sorted by tick ({ev.tick} after {previous_tick})")
        out.append(
            MidiEvent(ev.tick, ev.kind, ev.channel, ev.note, ev.velocity, ev.bend, delta=delta)
        )
        previous_tick = ev.tick
    return out


def notes_to_midi_events(
    notes: Iterable[NoteEventTime],
    config: Optional[PipelineConfig] = None,
) -> List[MidiEvent]:
    """Schedule and delta-encode ``notes`` with the midi section of ``config``."""
    cfg: MidiConfig = (config or PipelineConfig()).midi
    validate_midi_config(cfg)
    events = schedule_note_events(
        notes,
        bpm=cfg.bpm,
        ticks_per_beat=cfg.ticks_per_beat,
        channel=cfg.channel,
        bend_overflow=cfg.bend_overflow,
    )
    return to_delta_events(events)
