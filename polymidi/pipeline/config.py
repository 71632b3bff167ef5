# polymidi/pipeline/config.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from .constants import (
    DEFAULT_BPM,
    DEFAULT_TICKS_PER_BEAT,
    N_OVERLAPPING_FRAMES,
)
from .errors import ConfigError


BEND_OVERFLOW_POLICIES = ("clamp", "error")


# ------------------------------------------------------------
# Stage A Config (Window Stitching)
# ------------------------------------------------------------

@dataclass
class StitchConfig:
    # Frames shared by neighbouring model windows; half is trimmed from each side.
    n_overlapping_frames: int = N_OVERLAPPING_FRAMES


# ------------------------------------------------------------
# Stage B Config (Note Event Decoding)
# ------------------------------------------------------------

@dataclass
class DecoderConfig:
    onset_threshold: float = 0.5
    # None -> mean + std of the frame activations
    frame_threshold: Optional[float] = 0.3

    # Minimum note length. ms is converted to model frames;
    # min_note_len_frames wins when set.
    min_note_length_ms: float = 127.70
    min_note_len_frames: Optional[int] = None

    infer_onsets: bool = True
    min_freq_hz: Optional[float] = None
    max_freq_hz: Optional[float] = None
    melodia_trick: bool = True

    # Frames allowed below frame_threshold before a note is closed
    energy_tolerance: int = 11


# ------------------------------------------------------------
# Stage C Config (Pitch Bends)
# ------------------------------------------------------------

@dataclass
class PitchBendConfig:
    include_pitch_bends: bool = True
    n_bins_tolerance: int = 25
    gaussian_std: float = 5.0

    # False: drop bends from notes that overlap another note (one bend curve per channel)
    multiple_pitch_bends: bool = False


# ------------------------------------------------------------
# Stage D Config (MIDI Scheduling / Serialization)
# ------------------------------------------------------------

@dataclass
class MidiConfig:
    bpm: float = DEFAULT_BPM
    ticks_per_beat: int = DEFAULT_TICKS_PER_BEAT
    channel: int = 0
    bend_overflow: str = "clamp"  # "clamp" | "error"


@dataclass
class PipelineConfig:
    stitch: StitchConfig = field(default_factory=StitchConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    pitch_bend: PitchBendConfig = field(default_factory=PitchBendConfig)
    midi: MidiConfig = field(default_factory=MidiConfig)

    def validate(self) -> "PipelineConfig":
        """
        Raise ConfigError on the first invalid value. Nothing is clamped.

        Returns self so callers can chain ``config.validate()``.
        """
        validate_stitch_config(self.stitch)
        validate_decoder_config(self.decoder)
        validate_pitch_bend_config(self.pitch_bend)
        validate_midi_config(self.midi)
        return self


def _require_finite(name: str, value: float) -> None:
    try:
        ok = math.isfinite(float(value))
    except (TypeError, ValueError):
        ok = False
    if not ok:
        raise ConfigError(f"{name} must be a finite number, got {value!r}")


def _require_unit_interval(name: str, value: float) -> None:
    _require_finite(name, value)
    if not 0.0 <= float(value) <= 1.0:
        raise ConfigError(f"{name} must lie in [0, 1], got {value!r}")


def _require_non_negative_int(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")


def validate_stitch_config(cfg: StitchConfig) -> None:
    _require_non_negative_int("stitch.n_overlapping_frames", cfg.n_overlapping_frames)
    if cfg.n_overlapping_frames % 2:
        raise ConfigError(
            f"stitch.n_overlapping_frames must be even, got {cfg.n_overlapping_frames}"
        )


def validate_decoder_config(cfg: DecoderConfig) -> None:
    _require_unit_interval("decoder.onset_threshold", cfg.onset_threshold)
    if cfg.frame_threshold is not None:
        _require_unit_interval("decoder.frame_threshold", cfg.frame_threshold)

    _require_finite("decoder.min_note_length_ms", cfg.min_note_length_ms)
    if cfg.min_note_length_ms < 0:
        raise ConfigError(f"decoder.min_note_length_ms must be >= 0, got {cfg.min_note_length_ms}")
    if cfg.min_note_len_frames is not None:
        _require_non_negative_int("decoder.min_note_len_frames", cfg.min_note_len_frames)
    _require_non_negative_int("decoder.energy_tolerance", cfg.energy_tolerance)

    for name in ("min_freq_hz", "max_freq_hz"):
        value = getattr(cfg, name)
        if value is None:
            continue
        _require_finite(f"decoder.{name}", value)
        if value <= 0:
            raise ConfigError(f"decoder.{name} must be > 0, got {value}")
    if (
        cfg.min_freq_hz is not None
        and cfg.max_freq_hz is not None
        and cfg.min_freq_hz >= cfg.max_freq_hz
    ):
        raise ConfigError(
            f"decoder.min_freq_hz ({cfg.min_freq_hz}) must be below max_freq_hz ({cfg.max_freq_hz})"
        )


def validate_pitch_bend_config(cfg: PitchBendConfig) -> None:
    _require_non_negative_int("pitch_bend.n_bins_tolerance", cfg.n_bins_tolerance)
    _require_finite("pitch_bend.gaussian_std", cfg.gaussian_std)
    if cfg.gaussian_std <= 0:
        raise ConfigError(f"pitch_bend.gaussian_std must be > 0, got {cfg.gaussian_std}")


def validate_midi_config(cfg: MidiConfig) -> None:
    _require_finite("midi.bpm", cfg.bpm)
    if cfg.bpm <= 0:
        raise ConfigError(f"midi.bpm must be > 0, got {cfg.bpm}")
    if isinstance(cfg.ticks_per_beat, bool) or not isinstance(cfg.ticks_per_beat, int):
        raise ConfigError(f"midi.ticks_per_beat must be an integer, got {cfg.ticks_per_beat!r}")
    # metrical timing is a 15-bit field in the header chunk
    if not 1 <= cfg.ticks_per_beat <= 0x7FFF:
        raise ConfigError(f"midi.ticks_per_beat must lie in 1..32767, got {cfg.ticks_per_beat}")
    if isinstance(cfg.channel, bool) or not isinstance(cfg.channel, int) or not 0 <= cfg.channel <= 15:
        raise ConfigError(f"midi.channel must lie in 0..15, got {cfg.channel!r}")
    if cfg.bend_overflow not in BEND_OVERFLOW_POLICIES:
        raise ConfigError(
            f"midi.bend_overflow must be one of {BEND_OVERFLOW_POLICIES}, got {cfg.bend_overflow!r}"
        )


# ------------------------------------------------------------
# Default Pipeline Config instance
# ------------------------------------------------------------

DEFAULT_CONFIG = PipelineConfig()
