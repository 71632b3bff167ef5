import pytest

from polymidi.pipeline.config import DEFAULT_CONFIG, PipelineConfig
from polymidi.pipeline.config_loader import ConfigLoader, parse_override
from polymidi.pipeline.errors import ConfigError, UnknownConfigKeyError


def test_defaults():
    cfg = PipelineConfig()
    assert cfg.stitch.n_overlapping_frames == 30
    assert cfg.decoder.onset_threshold == 0.5
    assert cfg.decoder.frame_threshold == 0.3
    assert cfg.decoder.energy_tolerance == 11
    assert cfg.pitch_bend.n_bins_tolerance == 25
    assert cfg.midi.bpm == 120.0
    assert cfg.midi.ticks_per_beat == 480
    assert cfg.validate() is cfg
    assert DEFAULT_CONFIG == PipelineConfig()


@pytest.mark.parametrize(
    "section, key, value",
    [
        ("midi", "bpm", 0.0),
        ("midi", "bpm", float("inf")),
        ("midi", "ticks_per_beat", 0),
        ("midi", "ticks_per_beat", 40000),
        ("midi", "channel", 16),
        ("midi", "bend_overflow", "wrap"),
        ("decoder", "onset_threshold", 1.5),
        ("decoder", "frame_threshold", -0.1),
        ("decoder", "energy_tolerance", -1),
        ("decoder", "min_note_len_frames", -3),
        ("decoder", "min_note_length_ms", -1.0),
        ("decoder", "min_freq_hz", 0.0),
        ("pitch_bend", "n_bins_tolerance", -1),
        ("pitch_bend", "gaussian_std", 0.0),
        ("stitch", "n_overlapping_frames", 31),
    ],
)
def test_invalid_values_raise(section, key, value):
    cfg = PipelineConfig()
    setattr(getattr(cfg, section), key, value)
    with pytest.raises(ConfigError):
        cfg.validate()


def test_frequency_bounds_must_be_ordered():
    cfg = PipelineConfig()
    cfg.decoder.min_freq_hz = 500.0
    cfg.decoder.max_freq_hz = 200.0
    with pytest.raises(ConfigError):
        cfg.validate()


def test_frame_threshold_may_be_inferred():
    cfg = PipelineConfig()
    cfg.decoder.frame_threshold = None
    cfg.validate()


def test_parse_override():
    assert parse_override("midi.bpm=90") == ("midi.bpm", 90)
    assert parse_override("decoder.melodia_trick=false") == ("decoder.melodia_trick", False)
    assert parse_override("decoder.frame_threshold=none") == ("decoder.frame_threshold", None)
    assert parse_override("midi.bend_overflow=error") == ("midi.bend_overflow", "error")
    with pytest.raises(ConfigError):
        parse_override("midi.bpm")


def test_loader_toml_and_overrides(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        "[midi]\n"
        "bpm = 90.0\n"
        "ticks_per_beat = 960\n"
        "\n"
        "[decoder]\n"
        "min_note_len_frames = 4\n"
        "max_freq_hz = 1000.0\n"
    )

    loader = ConfigLoader()
    cfg = loader.load(str(path), [("midi.bpm", 100.0)])

    assert cfg.midi.bpm == 100.0
    assert cfg.midi.ticks_per_beat == 960
    assert cfg.decoder.min_note_len_frames == 4
    assert cfg.decoder.max_freq_hz == 1000.0
    assert loader.provenance["midi.bpm"] == "override"
    assert loader.provenance["midi.ticks_per_beat"] == f"file:{path}"


def test_loader_rejects_unknown_keys(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[midi]\ntempo = 90.0\n")
    with pytest.raises(UnknownConfigKeyError):
        ConfigLoader().load(str(path))
    with pytest.raises(UnknownConfigKeyError):
        ConfigLoader().load(overrides=[("decoder.nope", 1)])
    with pytest.raises(UnknownConfigKeyError):
        ConfigLoader().load(overrides=[("midi", 1)])


def test_loader_validates_result():
    with pytest.raises(ConfigError):
        ConfigLoader().load(overrides=[("midi.bpm", 0)])


def test_loader_does_not_touch_defaults():
    ConfigLoader().load(overrides=[("midi.bpm", 60.0)])
    assert DEFAULT_CONFIG.midi.bpm == 120.0


def test_loader_wraps_malformed_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[midi\nbpm = \n")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        ConfigLoader().load(str(path))


def test_loader_rejects_nested_keys_and_bare_values(tmp_path):
    with pytest.raises(UnknownConfigKeyError):
        ConfigLoader().load(overrides=[("midi.bpm.value", 1)])
    path = tmp_path / "config.toml"
    path.write_text("bpm = 90.0\n")
    with pytest.raises(ConfigError):
        ConfigLoader().load(str(path))
