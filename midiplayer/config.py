"""Player configuration.

Settings are read from a YAML file with top-level keys matching the fields
of ``PlayerConfig``:

```yaml
volume: 60
tempo_scale: 100
instrument_dir: ./instruments
midi_output: "FluidSynth virtual port"
```

A missing file is not an error: a warning is logged and defaults are used.
"""

import dataclasses
import logging
import os
import typing

import yaml

import midiplayer.constants
import midiplayer.instruments


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class PlayerConfig:

	volume: float = midiplayer.constants.DEFAULT_VOLUME
	tempo_scale: float = midiplayer.constants.DEFAULT_TEMPO_SCALE
	poll_interval: float = midiplayer.constants.CLOCK_POLL_INTERVAL
	sample_rate: int = midiplayer.constants.SAMPLE_RATE
	instrument_dir: typing.Optional[str] = None
	instrument_url: typing.Optional[str] = None
	midi_output: typing.Optional[str] = None
	fallback_synth: bool = True

	def __post_init__ (self) -> None:

		if not 0 <= self.volume <= 100:
			raise ValueError("volume must be between 0 and 100")

		if self.tempo_scale <= 0:
			raise ValueError("tempo_scale must be positive")

		if self.poll_interval <= 0:
			raise ValueError("poll_interval must be positive")

		if self.sample_rate <= 0:
			raise ValueError("sample_rate must be positive")

		if self.instrument_dir is not None and self.instrument_url is not None:
			raise ValueError("Set at most one of instrument_dir and instrument_url")


	def make_fetcher (self) -> midiplayer.instruments.Fetcher:

		"""The instrument fetcher these settings select (the packaged bank by default)."""

		if self.instrument_dir is not None:
			return midiplayer.instruments.DirectoryFetcher(self.instrument_dir)

		if self.instrument_url is not None:
			return midiplayer.instruments.UrlFetcher(self.instrument_url)

		return midiplayer.instruments.PackageFetcher()


def from_dict (data: typing.Dict[str, typing.Any]) -> PlayerConfig:

	"""Build a config from a mapping. Unknown keys raise ``ValueError``."""

	known = {field.name for field in dataclasses.fields(PlayerConfig)}
	unknown = sorted(set(data) - known)

	if unknown:
		raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

	return PlayerConfig(**data)


def load_config (config_path: str = 'midiplayer.yaml') -> PlayerConfig:

	"""Load configuration from a YAML file, falling back to defaults."""

	if not os.path.exists(config_path):
		logger.warning(f"Config file {config_path} not found. Using defaults.")
		return PlayerConfig()

	with open(config_path, 'r') as f:
		data = yaml.safe_load(f)

	if data is None:
		return PlayerConfig()

	if not isinstance(data, dict):
		raise ValueError(f"Config file {config_path} must contain a mapping")

	return from_dict(data)
