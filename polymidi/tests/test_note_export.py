import base64
import csv
import io
import json

from polymidi.pipeline.models import NoteEventTime, TranscriptionResult
from polymidi.pipeline.note_export import (
    CSV_COLUMNS,
    note_events_to_records,
    transcription_result_to_payload,
    write_note_events_csv,
)

NOTES = [
    NoteEventTime(0.5, 0.25, 60, 0.5, (0, 1, -1)),
    NoteEventTime(1.0, 0.5, 64, 1.0),
]


def test_records_are_json_friendly():
    records = note_events_to_records(NOTES)
    json.dumps(records)

    assert records[0]["end_time_s"] == 0.75
    assert records[0]["velocity"] == 63
    assert records[0]["pitch_bends"] == [0, 1, -1]
    assert records[1]["pitch_bends"] is None


def test_csv_columns_and_bends():
    buf = io.StringIO()
    write_note_events_csv(NOTES, buf)
    buf.seek(0)
    rows = list(csv.DictReader(buf))

    assert tuple(rows[0].keys()) == CSV_COLUMNS
    assert rows[0]["pitch_bends"] == "0 1 -1"
    assert rows[1]["pitch_bends"] == ""
    assert rows[1]["pitch_midi"] == "64"


def test_payload_encodes_midi():
    result = TranscriptionResult(notes=NOTES, midi_bytes=b"MThd", n_frames=10, diagnostics={"note_count": 2})
    payload = transcription_result_to_payload(result)

    assert base64.b64decode(payload["midi_bytes_b64"]) == b"MThd"
    assert payload["n_frames"] == 10
    assert len(payload["notes"]) == 2
    assert payload["diagnostics"] == {"note_count": 2}

    empty = transcription_result_to_payload(TranscriptionResult(notes=[], midi_bytes=b""))
    assert empty["midi_bytes_b64"] is None
