# polymidi/pipeline/errors.py
"""Exception types raised by the post-processing pipeline."""

from __future__ import annotations


class ShapeError(ValueError):
    """An input matrix has the wrong rank or dimensions."""


class ConfigError(ValueError):
    """Invalid configuration, e.g. a zero BPM or a negative tolerance."""


class UnknownConfigKeyError(ConfigError):
    """Raised when a configuration key is not present in the schema."""


class ArithmeticDegeneracyError(ArithmeticError):
    """A statistic or rescale would divide by a zero denominator."""


class PitchBendOverflowError(ValueError):
    """A pitch bend falls outside the 14-bit MIDI range and the policy forbids clamping."""
