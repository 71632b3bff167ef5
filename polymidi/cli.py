"""Command line front-end: model activations (.npz) -> MIDI file."""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import numpy as np

from polymidi.pipeline.config_loader import ConfigLoader, parse_override
from polymidi.pipeline.errors import ConfigError, ShapeError
from polymidi.pipeline.instrumentation import PipelineLogger
from polymidi.pipeline.note_export import (
    note_events_to_records,
    transcription_result_to_payload,
    write_note_events_csv,
)
from polymidi.pipeline.stage_a import OUTPUT_KEYS, audio_length_from_file, canonical_output_key
from polymidi.pipeline.transcribe import transcribe_model_output, transcribe_windows

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_BAD_INPUT = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert polyphonic model activations to MIDI")
    parser.add_argument(
        "activations",
        help="Path to a .npz holding contours/frames/onsets (rank 3 windows or rank 2 stitched)",
    )
    parser.add_argument("--output-midi", default="output.mid", help="Output MIDI path")
    parser.add_argument(
        "--output-notes",
        default=None,
        help="Optional note list; .csv writes CSV, anything else writes JSON",
    )
    parser.add_argument(
        "--output-payload",
        default=None,
        help="Optional JSON with base64 MIDI, notes and diagnostics",
    )
    parser.add_argument(
        "--audio",
        default=None,
        help="Source audio; its duration sets audio_original_length when the .npz lacks it",
    )
    parser.add_argument("--config", default=None, help="TOML config file")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override a config value (repeatable), e.g. --set midi.bpm=90",
    )
    parser.add_argument("--log-dir", default=None, help="Write JSONL stage logs and timing under this directory")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _load_activations(path: str):
    with np.load(path) as data:
        arrays = {}
        extras = {}
        for name in data.files:
            try:
                arrays[canonical_output_key(name)] = data[name]
            except ShapeError:
                extras[name] = data[name]
    missing = [k for k in OUTPUT_KEYS if k not in arrays]
    if missing:
        raise ShapeError(f"{path} is missing model outputs: {missing}")
    return arrays, extras


def _write_notes(path: str, notes) -> None:
    if path.lower().endswith(".csv"):
        with open(path, "w", newline="", encoding="utf-8") as f:
            write_note_events_csv(notes, f)
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(note_events_to_records(notes), f, indent=2)
    logger.info(f"Written notes to {path}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    if not os.path.exists(args.activations):
        logger.error(f"Activations file not found: {args.activations}")
        return EXIT_FAILURE

    pipeline_logger = PipelineLogger(base_dir=args.log_dir) if args.log_dir else None

    try:
        config = ConfigLoader().load(args.config, [parse_override(o) for o in args.overrides])
        arrays, extras = _load_activations(args.activations)

        ranks = {k: v.ndim for k, v in arrays.items()}
        if all(r == 3 for r in ranks.values()):
            if "audio_original_length" in extras:
                audio_len = int(np.asarray(extras["audio_original_length"]).item())
            elif args.audio:
                audio_len = audio_length_from_file(args.audio)
            else:
                raise ConfigError("windowed activations need audio_original_length in the .npz or --audio")
            logger.info(f"Stitching {arrays['frames'].shape[0]} windows covering {audio_len} samples")
            result = transcribe_windows(arrays, audio_len, config, pipeline_logger)
        elif all(r == 2 for r in ranks.values()):
            result = transcribe_model_output(arrays, config, pipeline_logger)
        else:
            raise ShapeError(f"activations must all be rank 3 or all rank 2, got {ranks}")
    except (ConfigError, ShapeError) as e:
        logger.error(f"Transcription failed: {e}")
        return EXIT_BAD_INPUT
    finally:
        if pipeline_logger is not None:
            pipeline_logger.finalize()

    with open(args.output_midi, "wb") as f:
        f.write(result.midi_bytes)
    logger.info(f"Written MIDI to {args.output_midi} ({len(result.notes)} notes)")

    if args.output_notes:
        _write_notes(args.output_notes, result.notes)

    if args.output_payload:
        with open(args.output_payload, "w", encoding="utf-8") as f:
            json.dump(transcription_result_to_payload(result), f, indent=2)
        logger.info(f"Written payload to {args.output_payload}")

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
