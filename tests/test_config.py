import logging
import pathlib

import pytest

import midiplayer.config
import midiplayer.instruments


def test_missing_file_uses_defaults (tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture) -> None:

	with caplog.at_level(logging.WARNING):
		config = midiplayer.config.load_config(str(tmp_path / "absent.yaml"))

	assert config == midiplayer.config.PlayerConfig()
	assert "not found" in caplog.text


def test_load_values_from_yaml (tmp_path: pathlib.Path) -> None:

	path = tmp_path / "midiplayer.yaml"
	path.write_text("volume: 60\ntempo_scale: 150\nmidi_output: Synth Port\nfallback_synth: false\n")

	config = midiplayer.config.load_config(str(path))

	assert config.volume == 60
	assert config.tempo_scale == 150
	assert config.midi_output == "Synth Port"
	assert config.fallback_synth is False


def test_empty_file_uses_defaults (tmp_path: pathlib.Path) -> None:

	path = tmp_path / "midiplayer.yaml"
	path.write_text("")

	assert midiplayer.config.load_config(str(path)) == midiplayer.config.PlayerConfig()


def test_non_mapping_file_is_rejected (tmp_path: pathlib.Path) -> None:

	path = tmp_path / "midiplayer.yaml"
	path.write_text("- volume\n")

	with pytest.raises(ValueError):
		midiplayer.config.load_config(str(path))


def test_unknown_keys_are_rejected () -> None:

	with pytest.raises(ValueError, match="colour"):
		midiplayer.config.from_dict({"volume": 10, "colour": "blue"})


@pytest.mark.parametrize("values", [
	{"volume": 101},
	{"volume": -1},
	{"tempo_scale": 0},
	{"poll_interval": 0},
	{"sample_rate": 0},
	{"instrument_dir": "bank", "instrument_url": "https://example.com/bank/"},
])
def test_invalid_values_are_rejected (values: dict) -> None:

	with pytest.raises(ValueError):
		midiplayer.config.PlayerConfig(**values)


def test_fetcher_selection (tmp_path: pathlib.Path) -> None:

	assert isinstance(midiplayer.config.PlayerConfig().make_fetcher(), midiplayer.instruments.PackageFetcher)

	by_dir = midiplayer.config.PlayerConfig(instrument_dir=str(tmp_path)).make_fetcher()
	by_url = midiplayer.config.PlayerConfig(instrument_url="https://example.com/bank/").make_fetcher()

	assert isinstance(by_dir, midiplayer.instruments.DirectoryFetcher)
	assert isinstance(by_url, midiplayer.instruments.UrlFetcher)
