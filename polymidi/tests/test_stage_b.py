import librosa
import numpy as np
import pytest

from polymidi.pipeline.errors import ArithmeticDegeneracyError, ShapeError
from polymidi.pipeline.stage_b import (
    decode_notes,
    frequency_bounds_to_columns,
    get_inferred_onsets,
    output_to_notes_polyphonic,
)


def _matrices(n_times=40, n_freqs=88):
    return np.zeros((n_times, n_freqs), dtype=np.float32), np.zeros((n_times, n_freqs), dtype=np.float32)


def _decode(frames, onsets, **kwargs):
    params = dict(
        onset_thresh=0.5,
        frame_thresh=0.3,
        min_note_len=5,
        infer_onsets=False,
        melodia_trick=False,
    )
    params.update(kwargs)
    return output_to_notes_polyphonic(frames, onsets, **params)


def test_single_onset_single_note():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0
    onsets[10, 40] = 1.0

    notes = _decode(frames, onsets, infer_onsets=True, melodia_trick=True)

    assert len(notes) == 1
    note = notes[0]
    assert note.start_frame == 10
    assert note.duration_frames == 10
    assert note.pitch_midi == 40 + 21
    assert note.amplitude == pytest.approx(1.0)
    assert note.pitch_bends is None


def test_inputs_are_not_modified():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0
    onsets[10, 40] = 1.0
    frames_before, onsets_before = frames.copy(), onsets.copy()

    _decode(frames, onsets, infer_onsets=True, melodia_trick=True, max_freq=100.0)

    assert np.array_equal(frames, frames_before)
    assert np.array_equal(onsets, onsets_before)


def test_note_must_be_longer_than_min_note_len():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0
    onsets[10, 40] = 1.0

    assert _decode(frames, onsets, min_note_len=10) == []
    assert len(_decode(frames, onsets, min_note_len=9)) == 1


def test_energy_tolerance_bridges_short_gaps():
    frames, onsets = _matrices(n_times=60)
    frames[10:20, 40] = 1.0
    frames[23:30, 40] = 1.0
    onsets[10, 40] = 1.0

    bridged = _decode(frames, onsets, energy_tolerance=5)
    split = _decode(frames, onsets, energy_tolerance=2)

    assert [(n.start_frame, n.duration_frames) for n in bridged] == [(10, 20)]
    assert [(n.start_frame, n.duration_frames) for n in split] == [(10, 10)]


def test_frequency_gate():
    frames, onsets = _matrices()
    for col in (10, 40):  # MIDI 31 (~49 Hz) and MIDI 61 (~277 Hz)
        frames[10:20, col] = 1.0
        onsets[10, col] = 1.0

    high = _decode(frames, onsets, min_freq=100.0)
    low = _decode(frames, onsets, max_freq=200.0)

    assert [n.pitch_midi for n in high] == [61]
    assert [n.pitch_midi for n in low] == [31]
    for n in high:
        assert librosa.midi_to_hz(n.pitch_midi) >= 100.0
    for n in low:
        assert librosa.midi_to_hz(n.pitch_midi) <= 200.0


def test_frequency_bounds_are_inclusive_at_exact_pitches():
    hz_61 = float(librosa.midi_to_hz(61))
    assert frequency_bounds_to_columns(88, hz_61, hz_61) == (40, 41)
    assert frequency_bounds_to_columns(88, None, None) == (0, 88)
    # bounds outside the keyboard clamp to the matrix
    assert frequency_bounds_to_columns(88, 20000.0, 10.0) == (0, 88)


def test_later_candidates_are_consumed_first():
    frames, onsets = _matrices(n_times=60)
    frames[10:30, 40] = 1.0
    onsets[10, 40] = 1.0
    onsets[14, 40] = 1.0

    notes = _decode(frames, onsets)

    # the onset at 14 claims the energy; the one at 10 is then too short
    assert [(n.start_frame, n.duration_frames) for n in notes] == [(14, 16)]


def test_melodia_recovers_note_without_onset():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0

    assert _decode(frames, onsets) == []
    notes = _decode(frames, onsets, melodia_trick=True)

    assert len(notes) == 1
    assert notes[0].pitch_midi == 61
    assert notes[0].start_frame == 10
    assert notes[0].duration_frames == 9
    assert notes[0].amplitude == pytest.approx(1.0)


def test_melodia_skips_short_leftovers():
    frames, onsets = _matrices()
    frames[10:14, 40] = 1.0

    assert _decode(frames, onsets, melodia_trick=True) == []


def test_inferred_onsets_surface_sustain_jumps():
    frames, onsets = _matrices(n_times=20)
    frames[5:15, 3] = 1.0
    onsets[0, 0] = 0.5

    inferred = get_inferred_onsets(onsets, frames)

    assert inferred[5, 3] == pytest.approx(0.5)
    assert inferred[6, 3] == 0.0
    assert inferred[0, 0] == pytest.approx(0.5)
    assert inferred.max() == pytest.approx(onsets.max())


def test_inferred_onsets_ignore_first_rows():
    frames, onsets = _matrices(n_times=10)
    frames[1:, 2] = 1.0
    onsets[5, 5] = 1.0

    inferred = get_inferred_onsets(onsets, frames)

    assert inferred[1, 2] == 0.0
    assert np.array_equal(inferred, onsets)


def test_inferred_onsets_find_missing_onset():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0
    onsets[30, 5] = 0.9  # unrelated onset sets the rescale target

    assert _decode(frames, onsets) == []
    notes = _decode(frames, onsets, infer_onsets=True)
    assert [(n.start_frame, n.duration_frames, n.pitch_midi) for n in notes] == [(10, 10, 61)]


def test_frame_threshold_inferred_from_statistics():
    frames, onsets = _matrices()
    frames[10:20, 40] = 1.0
    onsets[10, 40] = 1.0

    notes = _decode(frames, onsets, frame_thresh=None)

    assert [(n.start_frame, n.duration_frames) for n in notes] == [(10, 10)]


def test_frame_threshold_inference_needs_two_cells():
    frames = np.ones((1, 1), dtype=np.float32)
    with pytest.raises(ArithmeticDegeneracyError):
        _decode(frames, frames.copy(), frame_thresh=None)


def test_empty_matrices_give_no_notes():
    frames, onsets = _matrices(n_times=0)
    assert _decode(frames, onsets) == []


def test_shape_mismatch():
    frames, _ = _matrices()
    with pytest.raises(ShapeError):
        _decode(frames, np.zeros((39, 88)))
    with pytest.raises(ShapeError):
        _decode(np.zeros(40), np.zeros(40))


def test_decode_notes_uses_config(single_note_output, short_note_config):
    assert decode_notes(single_note_output) == []  # default min length is 11 frames
    notes = decode_notes(single_note_output, short_note_config)
    assert [(n.start_frame, n.duration_frames, n.pitch_midi) for n in notes] == [(10, 10, 61)]


def test_decoder_is_deterministic(single_note_output, short_note_config):
    first = decode_notes(single_note_output, short_note_config)
    second = decode_notes(single_note_output, short_note_config)
    assert first == second
