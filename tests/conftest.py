import asyncio
import typing

import mido
import pytest

import midiplayer.instruments
import midiplayer.midi_file


PIANO_YAML = b"""
tone_0010_piano:
  name: Test Piano
  program: 0
  zones:
    - waveform: sine
      attack: 0.0
      release: 0.0
"""


def instrument_yaml (export_name: str, program: int) -> bytes:

	"""Minimal instrument file with a single export."""

	return (
		f"{export_name}:\n"
		f"  name: Test {program}\n"
		f"  program: {program}\n"
		f"  zones:\n"
		f"    - waveform: sine\n"
	).encode()


def note_track (*notes: typing.Tuple[int, int, int], channel: int = 0, velocity: int = 100) -> midiplayer.midi_file.Track:

	"""Track of ``(pitch, on_tick, off_tick)`` notes on one channel."""

	events: typing.List[midiplayer.midi_file.RawEvent] = []

	for pitch, on_tick, off_tick in notes:
		events.append(midiplayer.midi_file.NoteOnEvent(tick=on_tick, note=pitch, velocity=velocity, channel=channel))
		events.append(midiplayer.midi_file.NoteOffEvent(tick=off_tick, note=pitch, channel=channel))

	events.sort(key=lambda event: event.tick)

	return midiplayer.midi_file.Track(events=events)


def seconds_document (*starts: float, length: float = 0.5, ticks_per_beat: int = 480) -> midiplayer.midi_file.MidiDocument:

	"""Document with one note starting at each of ``starts`` seconds (default tempo, 120 BPM)."""

	ticks_per_second = ticks_per_beat * 2
	notes = [
		(60 + index, int(round(start * ticks_per_second)), int(round((start + length) * ticks_per_second)))
		for index, start in enumerate(starts)
	]

	return midiplayer.midi_file.MidiDocument(ticks_per_beat=ticks_per_beat, tracks=[note_track(*notes)])


class FakeClock:

	"""Manually advanced clock for timer and transport tests."""

	def __init__ (self, start: float = 1000.0) -> None:

		self.now = start

	def __call__ (self) -> float:

		return self.now

	def advance (self, seconds: float) -> None:

		self.now += seconds


class FakeFetcher:

	"""In-memory instrument fetcher that counts requests per locator path.

	Paths listed in ``failing`` raise ``OSError``. When ``gate`` is set,
	every fetch waits for it, which keeps loads in flight until released.
	"""

	def __init__ (self, files: typing.Optional[typing.Dict[str, bytes]] = None, failing: typing.Iterable[str] = ()) -> None:

		self.files: typing.Dict[str, bytes] = {}

		for key, locator in midiplayer.instruments.GM_LOCATORS.items():
			self.files[locator.path] = instrument_yaml(locator.export_name, key)

		self.files.update(files or {})
		self.failing = set(failing)
		self.calls: typing.List[str] = []
		self.gate: typing.Optional[asyncio.Event] = None

	async def fetch (self, locator: midiplayer.instruments.InstrumentLocator) -> bytes:

		self.calls.append(locator.path)

		if self.gate is not None:
			await self.gate.wait()
		else:
			await asyncio.sleep(0)

		if locator.path in self.failing:
			raise OSError(f"cannot fetch {locator.path}")

		return self.files[locator.path]

	def count (self, path: str) -> int:

		return self.calls.count(path)


class RecordingVisualizer:

	"""Visualizer that records every call."""

	def __init__ (self) -> None:

		self.added: typing.List[typing.Tuple[int, int]] = []
		self.removed: typing.List[int] = []
		self.starts = 0
		self.stops = 0

	def add_note (self, pitch: int, velocity: int) -> None:

		self.added.append((pitch, velocity))

	def remove_note (self, pitch: int) -> None:

		self.removed.append(pitch)

	def start (self) -> None:

		self.starts += 1

	def stop (self) -> None:

		self.stops += 1


class RecordingRenderer:

	"""Sound renderer that records ``play_note`` arguments."""

	def __init__ (self) -> None:

		self.notes: typing.List[typing.Tuple[typing.Any, int, float, float, float]] = []

	def play_note (self, instrument: typing.Any, pitch: int, start: float, duration: float, gain: float) -> None:

		self.notes.append((instrument, pitch, start, duration, gain))


class FakeMidiOut:

	"""MIDI output stub that keeps every message sent."""

	def __init__ (self) -> None:

		self.sent: typing.List[mido.Message] = []
		self.closed = False

	def send (self, message: mido.Message) -> None:

		self.sent.append(message)

	def close (self) -> None:

		self.closed = True


@pytest.fixture
def fake_clock () -> FakeClock:

	return FakeClock()


@pytest.fixture
def fetcher () -> FakeFetcher:

	return FakeFetcher()


@pytest.fixture
def patch_midi (monkeypatch: pytest.MonkeyPatch) -> typing.List[FakeMidiOut]:

	"""Patch mido port discovery; returns the list of opened fake outputs."""

	opened: typing.List[FakeMidiOut] = []

	def _fake_get_output_names () -> typing.List[str]:
		return ["Dummy MIDI", "Other MIDI"]

	def _fake_open_output (name: str) -> FakeMidiOut:
		port = FakeMidiOut()
		opened.append(port)
		return port

	monkeypatch.setattr(mido, "get_output_names", _fake_get_output_names)
	monkeypatch.setattr(mido, "open_output", _fake_open_output)

	return opened
