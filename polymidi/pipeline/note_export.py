# polymidi/pipeline/note_export.py

from __future__ import annotations

import base64
import csv
from typing import Any, Dict, Iterable, List, TextIO

from .models import NoteEventTime, TranscriptionResult
from .stage_d import amplitude_to_velocity

CSV_COLUMNS = (
    "start_time_s",
    "end_time_s",
    "duration_s",
    "pitch_midi",
    "amplitude",
    "velocity",
    "pitch_bends",
)


def note_event_to_dict(note: NoteEventTime) -> Dict[str, Any]:
    """
    Convert a NoteEventTime into a JSON-friendly dictionary.

    ``pitch_bends`` stays None when bends were not estimated (or were
    dropped for overlapping notes), and is a list of ints otherwise.
    """
    return {
        "start_time_s": float(note.start_time_seconds),
        "end_time_s": float(note.end_time_seconds),
        "duration_s": float(note.duration_seconds),
        "pitch_midi": int(note.pitch_midi),
        "amplitude": float(note.amplitude),
        "velocity": amplitude_to_velocity(note.amplitude),
        "pitch_bends": [int(b) for b in note.pitch_bends] if note.pitch_bends is not None else None,
    }


def note_events_to_records(notes: Iterable[NoteEventTime]) -> List[Dict[str, Any]]:
    return [note_event_to_dict(n) for n in notes]


def write_note_events_csv(notes: Iterable[NoteEventTime], stream: TextIO) -> None:
    """Write note events as CSV; bends are space-separated in one column."""
    writer = csv.DictWriter(stream, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for record in note_events_to_records(notes):
        bends = record["pitch_bends"]
        record["pitch_bends"] = " ".join(str(b) for b in bends) if bends else ""
        writer.writerow(record)


def transcription_result_to_payload(result: TranscriptionResult) -> Dict[str, Any]:
    """
    Convert a TranscriptionResult into a single JSON-friendly payload.

    Structure:

    {
      "midi_bytes_b64": "....",     # base64-encoded MIDI (None when empty)
      "n_frames": 172,
      "notes": [ {note dict}, ... ],
      "diagnostics": { ... }
    }
    """
    midi_bytes_b64 = base64.b64encode(result.midi_bytes).decode("ascii") if result.midi_bytes else None
    return {
        "midi_bytes_b64": midi_bytes_b64,
        "n_frames": int(result.n_frames),
        "notes": note_events_to_records(result.notes),
        "diagnostics": dict(result.diagnostics),
    }
