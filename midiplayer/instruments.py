"""Instrument loading and caching.

Instruments are keyed by General MIDI program (0-127) or the percussion kit
(128). Each key is resolved to a locator through ``GM_LOCATORS``; keys with
no entry of their own use the piano locator. A fetcher returns the raw bytes
behind a locator and the cache installs them into its ``InstrumentRegistry``.

Instrument files are YAML (JSON is accepted too, being a YAML subset). A file
maps export names to instrument definitions, so one file can carry several
instruments:

```yaml
tone_0010_piano:
  name: Acoustic Grand Piano
  program: 0
  zones:
    - low: 0
      high: 127
      waveform: triangle
      attack: 0.005
      release: 0.3
      gain: 0.8
```

The locator names the export to take from the file once it is installed.
Files are parsed with ``yaml.safe_load`` only; nothing fetched is executed.

Loading is deduplicated. The cache keeps one table of entries, each holding
its state and the shared future of its load, so any number of concurrent
requests for the same key wait on a single fetch.
"""

import asyncio
import dataclasses
import enum
import importlib.resources
import logging
import os
import typing
import urllib.parse

import requests
import yaml

import midiplayer.constants


logger = logging.getLogger(__name__)


WAVEFORMS = ("sine", "triangle", "square", "sawtooth", "noise")


@dataclasses.dataclass (frozen=True)
class InstrumentLocator:

	"""Where an instrument lives and which export to take from it."""

	path: str
	export_name: str


GM_LOCATORS: typing.Dict[int, InstrumentLocator] = {
	0: InstrumentLocator("0010_piano.yaml", "tone_0010_piano"),
	24: InstrumentLocator("0025_guitar.yaml", "tone_0025_guitar"),
	32: InstrumentLocator("0033_bass.yaml", "tone_0033_bass"),
	48: InstrumentLocator("0048_strings.yaml", "tone_0048_strings"),
	midiplayer.constants.PERCUSSION_KEY: InstrumentLocator("0000_drums.yaml", "tone_0000_drums"),
}


@dataclasses.dataclass (frozen=True)
class Zone:

	"""Sound settings for a pitch range of an instrument."""

	low: int = 0
	high: int = 127
	waveform: str = "sine"
	attack: float = 0.01
	release: float = 0.1
	gain: float = 1.0


@dataclasses.dataclass (frozen=True)
class Instrument:

	"""An installed instrument definition, ready to be rendered."""

	name: str
	program: int
	zones: typing.Tuple[Zone, ...]

	def zone_for (self, pitch: int) -> Zone:

		"""The zone covering ``pitch``, or the first zone when none does."""

		for zone in self.zones:
			if zone.low <= pitch <= zone.high:
				return zone

		return self.zones[0]


class InstrumentFormatError (ValueError):

	"""Fetched instrument data could not be installed."""


def _parse_zone (data: typing.Any) -> Zone:

	if not isinstance(data, dict):
		raise InstrumentFormatError(f"Zone must be a mapping, got {type(data).__name__}")

	zone = Zone(
		low = int(data.get("low", 0)),
		high = int(data.get("high", 127)),
		waveform = str(data.get("waveform", "sine")),
		attack = float(data.get("attack", 0.01)),
		release = float(data.get("release", 0.1)),
		gain = float(data.get("gain", 1.0))
	)

	if zone.waveform not in WAVEFORMS:
		raise InstrumentFormatError(f"Unknown waveform {zone.waveform!r}")

	return zone


def parse_instruments (data: bytes) -> typing.Dict[str, Instrument]:

	"""Deserialize an instrument file into ``{export_name: Instrument}``."""

	try:
		document = yaml.safe_load(data)
	except yaml.YAMLError as e:
		raise InstrumentFormatError(f"Invalid instrument file: {e}") from e

	if not isinstance(document, dict) or not document:
		raise InstrumentFormatError("Instrument file must map export names to definitions")

	instruments: typing.Dict[str, Instrument] = {}

	for export_name, definition in document.items():

		if not isinstance(definition, dict):
			raise InstrumentFormatError(f"Definition of {export_name!r} must be a mapping")

		try:
			zones = tuple(_parse_zone(zone) for zone in definition.get("zones") or [{}])
			instruments[str(export_name)] = Instrument(
				name = str(definition.get("name", export_name)),
				program = int(definition.get("program", midiplayer.constants.DEFAULT_PROGRAM)),
				zones = zones
			)
		except (TypeError, ValueError) as e:
			raise InstrumentFormatError(f"Invalid definition of {export_name!r}: {e}") from e

	return instruments


class InstrumentRegistry:

	"""Installed instruments by export name, owned by one ``InstrumentCache``."""

	def __init__ (self) -> None:

		self._instruments: typing.Dict[str, Instrument] = {}


	def install (self, data: bytes, export_name: str) -> Instrument:

		"""Install every export in ``data`` and return the one named ``export_name``."""

		self._instruments.update(parse_instruments(data))

		if export_name not in self._instruments:
			raise InstrumentFormatError(f"Export {export_name!r} not found in loaded instrument data")

		return self._instruments[export_name]


	def get (self, export_name: str) -> typing.Optional[Instrument]:

		return self._instruments.get(export_name)


	def __contains__ (self, export_name: str) -> bool:

		return export_name in self._instruments


	def __len__ (self) -> int:

		return len(self._instruments)


@typing.runtime_checkable
class Fetcher (typing.Protocol):

	"""Returns the raw bytes behind an instrument locator."""

	async def fetch (self, locator: InstrumentLocator) -> bytes:
		...


class PackageFetcher:

	"""Reads instruments from the bank shipped with midiplayer."""

	async def fetch (self, locator: InstrumentLocator) -> bytes:

		resource = importlib.resources.files("midiplayer").joinpath("bank").joinpath(locator.path)

		return await asyncio.to_thread(resource.read_bytes)


class DirectoryFetcher:

	"""Reads instrument files relative to a local directory."""

	def __init__ (self, root: typing.Union[str, os.PathLike]) -> None:

		self.root = os.fspath(root)


	def _read (self, path: str) -> bytes:

		with open(os.path.join(self.root, path), 'rb') as f:
			return f.read()


	async def fetch (self, locator: InstrumentLocator) -> bytes:

		return await asyncio.to_thread(self._read, locator.path)


class UrlFetcher:

	"""Downloads instrument files relative to a base URL."""

	def __init__ (self, base_url: str, timeout: float = 10.0) -> None:

		self.base_url = base_url if base_url.endswith("/") else base_url + "/"
		self.timeout = timeout


	def _download (self, url: str) -> bytes:

		response = requests.get(url, timeout=self.timeout)
		response.raise_for_status()

		return response.content


	async def fetch (self, locator: InstrumentLocator) -> bytes:

		url = urllib.parse.urljoin(self.base_url, locator.path)

		return await asyncio.to_thread(self._download, url)


class EntryState (enum.Enum):

	UNLOADED = "unloaded"
	LOADING = "loading"
	LOADED = "loaded"
	FAILED = "failed"


@dataclasses.dataclass
class InstrumentEntry:

	"""Cache entry for one instrument key.

	``future`` is the load shared by every requester; it resolves to the
	handle, or ``None`` when the key failed.
	"""

	state: EntryState = EntryState.UNLOADED
	handle: typing.Optional[Instrument] = None
	future: typing.Optional[asyncio.Future] = None


class InstrumentCache:

	"""Deduplicating asynchronous instrument loader.

	Entries live as long as the cache. A failed key is never retried.
	"""

	def __init__ (
		self,
		fetcher: typing.Optional[Fetcher] = None,
		locators: typing.Optional[typing.Dict[int, InstrumentLocator]] = None
	) -> None:

		"""Create an empty cache.

		Parameters:
			fetcher: Source of instrument bytes (defaults to the packaged bank).
			locators: Key to locator table (defaults to ``GM_LOCATORS``). Must
				contain the default program, which backs every unmapped key.
		"""

		self.fetcher: Fetcher = fetcher if fetcher is not None else PackageFetcher()
		self.locators = dict(locators) if locators is not None else dict(GM_LOCATORS)
		self.registry = InstrumentRegistry()
		self._entries: typing.Dict[int, InstrumentEntry] = {}

		if midiplayer.constants.DEFAULT_PROGRAM not in self.locators:
			raise ValueError("Locator table must include the default program")


	def entry (self, key: int) -> InstrumentEntry:

		if key not in self._entries:
			self._entries[key] = InstrumentEntry()

		return self._entries[key]


	def state (self, key: int) -> EntryState:

		return self.entry(key).state


	def locator_for (self, key: int) -> InstrumentLocator:

		return self.locators.get(key, self.locators[midiplayer.constants.DEFAULT_PROGRAM])


	def ensure_loading (self, key: int) -> asyncio.Future:

		"""Return the shared future of ``key``'s load, starting the load if needed.

		Must be called with a running event loop. The entry moves from
		UNLOADED to LOADING before this method returns, so a second call
		for the same key always finds the load already in flight.
		"""

		entry = self.entry(key)

		if entry.future is not None:
			return entry.future

		loop = asyncio.get_running_loop()

		if entry.state in (EntryState.LOADED, EntryState.FAILED):
			entry.future = loop.create_future()
			entry.future.set_result(entry.handle)
			return entry.future

		entry.state = EntryState.LOADING
		entry.future = loop.create_task(self._load(key, entry))

		return entry.future


	async def load_instrument (self, key: int) -> typing.Optional[Instrument]:

		"""Load ``key`` (once) and return its handle, or ``None`` if unavailable."""

		entry = self.entry(key)

		if entry.state == EntryState.LOADED:
			return entry.handle

		# Shielded so one cancelled waiter does not cancel the shared load.
		return await asyncio.shield(self.ensure_loading(key))


	async def _load (self, key: int, entry: InstrumentEntry) -> typing.Optional[Instrument]:

		locator = self.locator_for(key)

		try:
			data = await self.fetcher.fetch(locator)
			handle = self.registry.install(data, locator.export_name)

		except asyncio.CancelledError:
			entry.state = EntryState.UNLOADED
			entry.future = None
			raise

		except Exception as e:
			default = self._entries.get(midiplayer.constants.DEFAULT_PROGRAM)

			if key != midiplayer.constants.DEFAULT_PROGRAM and default is not None and default.state == EntryState.LOADED:
				logger.warning(f"Failed to load instrument {key} ({locator.path}): {e}; using default instrument")
				entry.state = EntryState.LOADED
				entry.handle = default.handle
				return entry.handle

			logger.warning(f"Failed to load instrument {key} ({locator.path}): {e}")
			entry.state = EntryState.FAILED
			entry.handle = None
			return None

		entry.state = EntryState.LOADED
		entry.handle = handle

		logger.info(f"Loaded instrument {key} ({locator.export_name})")

		return handle


	def get_handle (self, key: int) -> typing.Optional[Instrument]:

		"""The handle for ``key`` if loaded, else the default instrument if loaded, else ``None``."""

		entry = self._entries.get(key)

		if entry is not None and entry.state == EntryState.LOADED:
			return entry.handle

		default = self._entries.get(midiplayer.constants.DEFAULT_PROGRAM)

		if default is not None and default.state == EntryState.LOADED:
			return default.handle

		return None


	async def preload_many (self, keys: typing.Iterable[int]) -> typing.Dict[int, typing.Optional[Instrument]]:

		"""Load several keys concurrently and wait for all of them to settle.

		A key that fails resolves to ``None``; it never aborts the others.
		"""

		unique = list(dict.fromkeys(keys))
		results = await asyncio.gather(*(self.load_instrument(key) for key in unique), return_exceptions=True)

		handles: typing.Dict[int, typing.Optional[Instrument]] = {}

		for key, result in zip(unique, results):
			if isinstance(result, BaseException):
				logger.warning(f"Preload of instrument {key} did not complete: {result!r}")
				handles[key] = None
			else:
				handles[key] = result

		return handles


	async def close (self) -> None:

		"""Cancel loads still in flight; their entries return to UNLOADED."""

		pending = [
			entry.future for entry in self._entries.values()
			if entry.state == EntryState.LOADING and entry.future is not None and not entry.future.done()
		]

		for future in pending:
			future.cancel()

		if pending:
			await asyncio.gather(*pending, return_exceptions=True)

		# A load cancelled before it started never ran its own cleanup.
		for entry in self._entries.values():
			if entry.future is not None and entry.future.cancelled():
				entry.state = EntryState.UNLOADED
				entry.future = None
