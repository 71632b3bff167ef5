import io
import json
import os

import mido
import numpy as np
import pytest

from polymidi.pipeline import transcribe_audio, transcribe_model_output, transcribe_windows
from polymidi.pipeline.constants import ANNOT_N_FRAMES, AUDIO_SAMPLE_RATE, HOP_SECONDS
from polymidi.pipeline.errors import ShapeError
from polymidi.pipeline.instrumentation import PipelineLogger
from polymidi.pipeline.transcribe import model_output_to_notes


def _note_window():
    """Model output for one window: a note at window frames 25..34 (stitched 10..19)."""
    contours = np.zeros((1, ANNOT_N_FRAMES, 264), dtype=np.float32)
    frames = np.zeros((1, ANNOT_N_FRAMES, 88), dtype=np.float32)
    onsets = np.zeros((1, ANNOT_N_FRAMES, 88), dtype=np.float32)
    frames[0, 25:35, 40] = 1.0
    onsets[0, 25, 40] = 1.0
    contours[0, 25:35, 120] = 1.0
    return {"contour": contours, "note": frames, "onset": onsets}


def test_model_output_to_notes(single_note_output, short_note_config):
    (note,) = model_output_to_notes(single_note_output, short_note_config)

    assert note.pitch_midi == 61
    assert note.start_time_seconds == pytest.approx(10 * HOP_SECONDS)
    assert note.duration_seconds == pytest.approx(10 * HOP_SECONDS)
    assert note.pitch_bends == (0,) * 10
    assert note.amplitude == pytest.approx(1.0)


def test_transcribe_model_output_end_to_end(single_note_output, short_note_config):
    result = transcribe_model_output(single_note_output, short_note_config)

    assert len(result.notes) == 1
    assert result.n_frames == 40
    assert result.diagnostics["min_note_len_frames"] == 5
    assert result.diagnostics["contract_notes"] == {"status": "pass"}
    assert result.diagnostics["contract_midi"] == {"status": "pass"}

    midi = mido.MidiFile(file=io.BytesIO(result.midi_bytes))
    types = [m.type for m in midi.tracks[0]]
    assert types[0] == "set_tempo"
    assert types.count("note_on") == 1
    assert types.count("note_off") == 1
    assert types.count("pitchwheel") == 10


def test_transcribe_empty_activations(empty_output):
    result = transcribe_model_output(empty_output)
    assert result.notes == []
    midi = mido.MidiFile(file=io.BytesIO(result.midi_bytes))
    assert [m.type for m in midi.tracks[0]] == ["set_tempo", "end_of_track"]


def test_transcribe_accepts_plain_mapping(single_note_output, short_note_config):
    mapping = {
        "contours": single_note_output.contours,
        "frames": single_note_output.frames,
        "onsets": single_note_output.onsets,
    }
    result = transcribe_model_output(mapping, short_note_config)
    assert [n.pitch_midi for n in result.notes] == [61]


def test_transcribe_rejects_mismatched_rows(single_note_output):
    mapping = {
        "contours": single_note_output.contours,
        "frames": single_note_output.frames,
        "onsets": single_note_output.onsets[:-1],
    }
    with pytest.raises(ShapeError):
        transcribe_model_output(mapping)


def test_transcribe_is_deterministic(single_note_output, short_note_config):
    first = transcribe_model_output(single_note_output, short_note_config)
    second = transcribe_model_output(single_note_output, short_note_config)
    assert first.midi_bytes == second.midi_bytes
    assert first.notes == second.notes


def test_transcribe_windows(short_note_config):
    result = transcribe_windows(_note_window(), AUDIO_SAMPLE_RATE, short_note_config)
    assert result.n_frames == 86
    assert [(n.pitch_midi, round(n.start_time_seconds / HOP_SECONDS)) for n in result.notes] == [(61, 10)]


def test_transcribe_audio_with_fake_model(short_note_config):
    seen = []

    def predict(batch):
        seen.append(batch.shape)
        return _note_window()

    audio = np.zeros(AUDIO_SAMPLE_RATE, dtype=np.float32)
    result = transcribe_audio(audio, predict, short_note_config)

    assert seen == [(1, 43844, 1)]
    assert result.n_frames == 86
    assert [n.pitch_midi for n in result.notes] == [61]
    assert result.notes[0].start_time_seconds == pytest.approx(10 * HOP_SECONDS)


def test_pipeline_logger_records_stages(tmp_path, single_note_output, short_note_config):
    pipeline_logger = PipelineLogger(base_dir=str(tmp_path), run_name="run")
    transcribe_model_output(single_note_output, short_note_config, pipeline_logger)
    pipeline_logger.finalize()

    with open(os.path.join(tmp_path, "run", "logs.jsonl"), encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]
    timed = {e["stage"] for e in entries if e["event"] == "timing"}
    assert {"stage_b", "stage_c", "stage_d"} <= timed
    assert any(e["event"] == "config" for e in entries)

    with open(os.path.join(tmp_path, "run", "timing.json"), encoding="utf-8") as f:
        timing = json.load(f)
    assert "total" in timing and "stage_b" in timing


def test_restruck_key_is_released_before_next_note_on():
    contours = np.zeros((60, 264), dtype=np.float32)
    frames = np.zeros((60, 88), dtype=np.float32)
    onsets = np.zeros((60, 88), dtype=np.float32)
    frames[4:40, 39] = 0.9
    onsets[4, 39] = 0.9
    onsets[17, 39] = 0.9

    result = transcribe_model_output({"contours": contours, "frames": frames, "onsets": onsets})

    assert [n.pitch_midi for n in result.notes] == [60, 60]
    track = mido.MidiFile(file=io.BytesIO(result.midi_bytes)).tracks[0]
    tick = 0
    timeline = []
    for msg in track:
        tick += msg.time
        if msg.type in ("note_on", "note_off"):
            timeline.append((tick, msg.type, msg.note))
    # both roundings go up: the first note would otherwise end on tick 190
    assert timeline == [
        (45, "note_on", 60),
        (189, "note_off", 60),
        (189, "note_on", 60),
        (445, "note_off", 60),
    ]
    assert result.diagnostics["contract_midi"] == {"status": "pass"}
