import asyncio
import typing

import pytest
import requests

import midiplayer.constants
import midiplayer.instruments

import conftest
from midiplayer.instruments import EntryState, InstrumentCache


GUITAR_PATH = midiplayer.instruments.GM_LOCATORS[24].path
PIANO_PATH = midiplayer.instruments.GM_LOCATORS[0].path


@pytest.mark.asyncio
async def test_concurrent_loads_share_one_fetch (fetcher: conftest.FakeFetcher) -> None:

	"""Two concurrent requests for the same key issue a single fetch."""

	cache = InstrumentCache(fetcher)

	first, second = await asyncio.gather(cache.load_instrument(24), cache.load_instrument(24))

	assert fetcher.count(GUITAR_PATH) == 1
	assert first is second
	assert first is not None and first.program == 24
	assert cache.state(24) == EntryState.LOADED


@pytest.mark.asyncio
async def test_entry_is_loading_before_first_suspension (fetcher: conftest.FakeFetcher) -> None:

	cache = InstrumentCache(fetcher)
	fetcher.gate = asyncio.Event()

	future = cache.ensure_loading(24)

	assert cache.state(24) == EntryState.LOADING
	assert cache.ensure_loading(24) is future

	fetcher.gate.set()
	await future

	assert fetcher.count(GUITAR_PATH) == 1


@pytest.mark.asyncio
async def test_loaded_instrument_returns_without_fetching (fetcher: conftest.FakeFetcher) -> None:

	cache = InstrumentCache(fetcher)

	await cache.load_instrument(0)
	await cache.load_instrument(0)

	assert fetcher.count(PIANO_PATH) == 1


@pytest.mark.asyncio
async def test_unmapped_key_uses_default_locator (fetcher: conftest.FakeFetcher) -> None:

	"""Keys without a locator of their own fetch the default instrument file."""

	cache = InstrumentCache(fetcher)

	handle = await cache.load_instrument(73)

	assert fetcher.calls == [PIANO_PATH]
	assert handle is not None and handle.program == 0
	assert cache.state(73) == EntryState.LOADED


@pytest.mark.asyncio
async def test_failure_substitutes_loaded_default () -> None:

	fetcher = conftest.FakeFetcher(failing=[GUITAR_PATH])
	cache = InstrumentCache(fetcher)

	piano = await cache.load_instrument(0)
	guitar = await cache.load_instrument(24)

	assert guitar is piano
	assert cache.state(24) == EntryState.LOADED

	# Later callers reuse the substitute without refetching.
	await cache.load_instrument(24)
	assert fetcher.count(GUITAR_PATH) == 1


@pytest.mark.asyncio
async def test_failure_without_default_is_terminal () -> None:

	fetcher = conftest.FakeFetcher(failing=[GUITAR_PATH])
	cache = InstrumentCache(fetcher)

	assert await cache.load_instrument(24) is None
	assert cache.state(24) == EntryState.FAILED

	# Loading the default later does not revive the failed key.
	await cache.load_instrument(0)

	assert await cache.load_instrument(24) is None
	assert cache.state(24) == EntryState.FAILED
	assert fetcher.count(GUITAR_PATH) == 1


@pytest.mark.asyncio
async def test_invalid_instrument_data_fails_like_a_fetch_error () -> None:

	fetcher = conftest.FakeFetcher(files={GUITAR_PATH: b"- just\n- a list\n"})
	cache = InstrumentCache(fetcher)

	assert await cache.load_instrument(24) is None
	assert cache.state(24) == EntryState.FAILED


@pytest.mark.asyncio
async def test_missing_export_fails () -> None:

	fetcher = conftest.FakeFetcher(files={GUITAR_PATH: conftest.instrument_yaml("some_other_export", 24)})
	cache = InstrumentCache(fetcher)

	assert await cache.load_instrument(24) is None


@pytest.mark.asyncio
async def test_get_handle_falls_back_to_default (fetcher: conftest.FakeFetcher) -> None:

	cache = InstrumentCache(fetcher)

	assert cache.get_handle(24) is None

	piano = await cache.load_instrument(0)

	assert cache.get_handle(24) is piano

	guitar = await cache.load_instrument(24)

	assert cache.get_handle(24) is guitar


@pytest.mark.asyncio
async def test_preload_many_survives_failures () -> None:

	fetcher = conftest.FakeFetcher(failing=[GUITAR_PATH])
	cache = InstrumentCache(fetcher)

	handles = await cache.preload_many([24, 32, 128, 32])

	assert handles[24] is None
	assert handles[32] is not None and handles[32].program == 32
	assert handles[128] is not None and handles[128].program == midiplayer.constants.PERCUSSION_KEY
	assert sorted(handles) == [24, 32, 128]


@pytest.mark.asyncio
async def test_close_cancels_in_flight_loads (fetcher: conftest.FakeFetcher) -> None:

	cache = InstrumentCache(fetcher)
	fetcher.gate = asyncio.Event()

	cache.ensure_loading(24)
	await asyncio.sleep(0)
	await cache.close()

	assert cache.state(24) == EntryState.UNLOADED


def test_registry_installs_all_exports () -> None:

	data = conftest.PIANO_YAML + b"\n" + conftest.instrument_yaml("tone_extra", 5)
	registry = midiplayer.instruments.InstrumentRegistry()

	piano = registry.install(data, "tone_0010_piano")

	assert piano.name == "Test Piano"
	assert "tone_extra" in registry
	assert len(registry) == 2


def test_zone_lookup () -> None:

	instrument = midiplayer.instruments.parse_instruments(b"""
kit:
  program: 128
  zones:
    - {low: 35, high: 36, waveform: sine}
    - {low: 37, high: 81, waveform: noise}
""")["kit"]

	assert instrument.zone_for(36).waveform == "sine"
	assert instrument.zone_for(40).waveform == "noise"
	assert instrument.zone_for(10).waveform == "sine"


def test_unknown_waveform_is_rejected () -> None:

	with pytest.raises(midiplayer.instruments.InstrumentFormatError):
		midiplayer.instruments.parse_instruments(b"x:\n  zones:\n    - waveform: kazoo\n")


@pytest.mark.asyncio
async def test_packaged_bank_loads () -> None:

	"""Every locator in the default table points at a valid packaged file."""

	cache = InstrumentCache()

	handles = await cache.preload_many(midiplayer.instruments.GM_LOCATORS)

	assert all(handle is not None for handle in handles.values())


@pytest.mark.asyncio
async def test_directory_fetcher (tmp_path) -> None:

	(tmp_path / PIANO_PATH).write_bytes(conftest.PIANO_YAML)

	cache = InstrumentCache(midiplayer.instruments.DirectoryFetcher(tmp_path))

	handle = await cache.load_instrument(0)

	assert handle is not None and handle.name == "Test Piano"


class _FakeResponse:

	def __init__ (self, content: bytes, status_code: int = 200) -> None:

		self.content = content
		self.status_code = status_code

	def raise_for_status (self) -> None:

		if self.status_code >= 400:
			raise requests.HTTPError(f"{self.status_code} error")


@pytest.mark.asyncio
async def test_url_fetcher_downloads_relative_to_base (monkeypatch: pytest.MonkeyPatch) -> None:

	requested: typing.List[typing.Tuple[str, float]] = []

	def fake_get (url: str, timeout: float) -> _FakeResponse:
		requested.append((url, timeout))
		return _FakeResponse(conftest.PIANO_YAML)

	monkeypatch.setattr(requests, "get", fake_get)

	cache = InstrumentCache(midiplayer.instruments.UrlFetcher("https://example.com/bank", timeout=5.0))
	handle = await cache.load_instrument(0)

	assert requested == [("https://example.com/bank/0010_piano.yaml", 5.0)]
	assert handle is not None and handle.name == "Test Piano"


@pytest.mark.asyncio
async def test_url_fetcher_http_error_fails_the_load (monkeypatch: pytest.MonkeyPatch) -> None:

	monkeypatch.setattr(requests, "get", lambda url, timeout: _FakeResponse(b"", status_code=404))

	cache = InstrumentCache(midiplayer.instruments.UrlFetcher("https://example.com/bank/"))

	assert await cache.load_instrument(24) is None
	assert cache.state(24) == EntryState.FAILED
