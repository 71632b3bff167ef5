# polymidi/pipeline/midi_export.py

from __future__ import annotations

import io
from typing import List, Optional, Sequence

import mido

from .config import PipelineConfig, validate_midi_config
from .errors import ConfigError
from .models import MidiEvent, MidiEventKind, NoteEventTime
from .stage_d import notes_to_midi_events, to_delta_events

MAX_TEMPO_US = 0xFFFFFF  # set_tempo carries 24 bits


def _tempo_us(bpm: float) -> int:
    """
    Microseconds per beat for the Tempo meta-event.
    """
    if bpm <= 0:
        raise ConfigError(f"bpm must be > 0, got {bpm}")
    tempo = mido.bpm2tempo(bpm)
    if not 0 < tempo <= MAX_TEMPO_US:
        raise ConfigError(f"bpm {bpm} gives tempo {tempo}us/beat, outside the 24-bit meta-event range")
    return tempo


def _to_message(ev: MidiEvent) -> mido.Message:
    if ev.kind is MidiEventKind.NOTE_ON:
        return mido.Message("note_on", channel=ev.channel, note=ev.note, velocity=ev.velocity, time=ev.delta)
    if ev.kind is MidiEventKind.NOTE_OFF:
        return mido.Message("note_off", channel=ev.channel, note=ev.note, velocity=0, time=ev.delta)
    if ev.kind is MidiEventKind.PITCH_BEND:
        # mido's pitch is signed; it writes pitch + 0x2000 on the wire
        return mido.Message("pitchwheel", channel=ev.channel, pitch=ev.bend, time=ev.delta)
    raise ValueError(f"unsupported channel event kind {ev.kind!r}")


def events_to_midi_file(
    events: Sequence[MidiEvent],
    bpm: float,
    ticks_per_beat: int,
) -> mido.MidiFile:
    """
    Build a single-track (format 0) MidiFile: a Tempo meta-event at delta 0
    followed by the channel events in the given order.

    Events without a ``delta`` are delta-encoded first; they must then be
    sorted by tick.
    """
    if any(ev.delta is None for ev in events):
        events = to_delta_events(events)

    midi_file = mido.MidiFile(type=0, ticks_per_beat=ticks_per_beat)
    track = mido.MidiTrack()
    track.append(mido.MetaMessage("set_tempo", tempo=_tempo_us(bpm), time=0))
    for ev in events:
        track.append(_to_message(ev))
    track.append(mido.MetaMessage("end_of_track", time=0))
    midi_file.tracks.append(track)
    return midi_file


def midi_file_to_bytes(midi_file: mido.MidiFile) -> bytes:
    buf = io.BytesIO()
    midi_file.save(file=buf)
    return buf.getvalue()


def events_to_midi_bytes(
    events: Sequence[MidiEvent],
    bpm: float,
    ticks_per_beat: int,
) -> bytes:
    return midi_file_to_bytes(events_to_midi_file(events, bpm, ticks_per_beat))


def notes_to_midi_bytes(
    notes: Sequence[NoteEventTime],
    config: Optional[PipelineConfig] = None,
) -> bytes:
    """
    Convert time-domain note events into a Standard MIDI File as bytes.

    Either the whole file is built or an exception propagates; no partial
    buffer is ever returned.
    """
    config = config or PipelineConfig()
    validate_midi_config(config.midi)
    events: List[MidiEvent] = notes_to_midi_events(notes, config)
    return events_to_midi_bytes(events, config.midi.bpm, config.midi.ticks_per_beat)
