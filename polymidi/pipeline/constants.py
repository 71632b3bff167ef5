# polymidi/pipeline/constants.py
"""Timing and frequency constants of the note/onset/contour model."""

FFT_HOP = 256
AUDIO_SAMPLE_RATE = 22050

NOTES_BINS_PER_SEMITONE = 1
CONTOURS_BINS_PER_SEMITONE = 3

# base frequency of the lowest piano key, the first bin of every activation matrix
ANNOTATIONS_BASE_FREQUENCY = 27.5
ANNOTATIONS_N_SEMITONES = 88
N_FREQ_BINS_NOTES = ANNOTATIONS_N_SEMITONES * NOTES_BINS_PER_SEMITONE
N_FREQ_BINS_CONTOURS = ANNOTATIONS_N_SEMITONES * CONTOURS_BINS_PER_SEMITONE

AUDIO_WINDOW_LENGTH = 2  # seconds of audio per model window

ANNOTATIONS_FPS = AUDIO_SAMPLE_RATE // FFT_HOP
HOP_SECONDS = FFT_HOP / AUDIO_SAMPLE_RATE

# number of frames the model emits per window
ANNOT_N_FRAMES = ANNOTATIONS_FPS * AUDIO_WINDOW_LENGTH

# samples fed to the model per window
AUDIO_N_SAMPLES = AUDIO_SAMPLE_RATE * AUDIO_WINDOW_LENGTH - FFT_HOP

N_OVERLAPPING_FRAMES = 30
OVERLAP_LEN = N_OVERLAPPING_FRAMES * FFT_HOP
HOP_SIZE = AUDIO_N_SAMPLES - OVERLAP_LEN

# Sub-hop drift accumulated per window; 0.0018 s is an empirical calibration.
WINDOW_OFFSET = HOP_SECONDS * (ANNOT_N_FRAMES - AUDIO_N_SAMPLES / FFT_HOP) + 0.0018

MIDI_OFFSET = 21
MAX_MIDI_VELOCITY = 127

PITCH_BEND_CENTER = 0x2000
PITCH_BEND_MIN = -8192
PITCH_BEND_MAX = 8191

DEFAULT_TICKS_PER_BEAT = 480
DEFAULT_BPM = 120.0
