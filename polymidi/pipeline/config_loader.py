# polymidi/pipeline/config_loader.py
from __future__ import annotations

import json
import tomllib
from dataclasses import fields
from typing import Any, Dict, Iterable, Optional, Tuple

from .config import PipelineConfig
from .errors import ConfigError, UnknownConfigKeyError


def _load_toml(path: str) -> Dict[str, Any]:
    with open(path, "rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def parse_override(text: str) -> Tuple[str, Any]:
    """
    Parse a ``dotted.key=value`` command line override.

    Values are read as JSON where possible (numbers, true/false, null);
    ``none`` is accepted for null and anything else stays a string.
    """
    if "=" not in text:
        raise ConfigError(f"Override must look like 'section.key=value', got {text!r}")
    dotted, raw = text.split("=", 1)
    dotted = dotted.strip()
    raw = raw.strip()
    if not dotted:
        raise ConfigError(f"Override has an empty key: {text!r}")
    if raw.lower() == "none":
        return dotted, None
    try:
        return dotted, json.loads(raw)
    except json.JSONDecodeError:
        return dotted, raw


class ConfigLoader:
    """
    Strict, provenance-tracking config loader.

    A config is a fixed set of sections (``stitch``, ``decoder``,
    ``pitch_bend``, ``midi``) holding scalar values. A TOML file supplies
    whole sections; overrides address single ``section.key`` values and are
    applied last. Unknown sections or keys raise, and every value set is
    tagged with its source in ``provenance``.
    """

    SECTIONS = tuple(f.name for f in fields(PipelineConfig))

    def __init__(self) -> None:
        self.provenance: Dict[str, str] = {}

    def load(
        self,
        path: Optional[str] = None,
        overrides: Optional[Iterable[Tuple[str, Any]]] = None,
    ) -> PipelineConfig:
        config = PipelineConfig()

        if path:
            source = f"file:{path}"
            for section, values in _load_toml(path).items():
                if not isinstance(values, dict):
                    raise ConfigError(f"Expected a [{section}] table in {path}")
                for key, value in values.items():
                    self._set(config, section, key, value, source)

        for dotted, value in overrides or ():
            section, _, key = dotted.partition(".")
            if not key or "." in key:
                raise UnknownConfigKeyError(dotted)
            self._set(config, section, key, value, "override")

        return config.validate()

    def _set(self, config: PipelineConfig, section: str, key: str, value: Any, source: str) -> None:
        if section not in self.SECTIONS:
            raise UnknownConfigKeyError(section)
        target = getattr(config, section)
        if key not in {f.name for f in fields(target)}:
            raise UnknownConfigKeyError(f"{section}.{key}")
        setattr(target, key, value)
        self.provenance[f"{section}.{key}"] = source
