"""MIDI source documents.

The playback engine never reads MIDI bytes itself. It consumes a
``MidiDocument``: a ticks-per-beat resolution and a list of tracks, each
holding tick-ordered raw events with absolute tick positions.

Documents can be built directly, converted from a ``mido.MidiFile``, loaded
from disk, or built from the plain-dict form produced by other parsers:

```python
document = midiplayer.midi_file.load("song.mid")

document = midiplayer.midi_file.from_dict({
	"ticksPerBeat": 480,
	"tracks": [{"events": [
		{"type": "noteOn", "time": 0, "note": 60, "velocity": 100, "channel": 0},
		{"type": "noteOff", "time": 480, "note": 60, "channel": 0},
	]}],
})
```

Timing data is validated on the way in: a non-positive ticks-per-beat or a
non-positive tempo raises ``ParseError`` rather than producing undefined
timing later.
"""

import dataclasses
import logging
import os
import typing

import mido

import midiplayer.constants
from midiplayer.errors import ParseError


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class TempoEvent:

	"""Set the tempo from ``tick`` onward."""

	tick: int
	microseconds_per_beat: int


@dataclasses.dataclass (frozen=True)
class ProgramChangeEvent:

	"""Assign ``program`` to ``channel`` from ``tick`` onward."""

	tick: int
	channel: int
	program: int


@dataclasses.dataclass (frozen=True)
class NoteOnEvent:

	tick: int
	note: int
	velocity: int
	channel: int


@dataclasses.dataclass (frozen=True)
class NoteOffEvent:

	tick: int
	note: int
	channel: int


RawEvent = typing.Union[TempoEvent, ProgramChangeEvent, NoteOnEvent, NoteOffEvent]


@dataclasses.dataclass
class Track:

	"""An ordered list of raw events with absolute tick positions."""

	events: typing.List[RawEvent] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class MidiDocument:

	"""A parsed MIDI file: timing resolution plus tracks of raw events."""

	ticks_per_beat: int
	tracks: typing.List[Track] = dataclasses.field(default_factory=list)


def _check_range (track_index: int, event: RawEvent, field: str, low: int, high: int) -> None:

	value = getattr(event, field)

	if not low <= value <= high:
		raise ParseError(f"Track {track_index}: {field} {value} at tick {event.tick} is outside {low}-{high}")


def validate (document: MidiDocument) -> MidiDocument:

	"""Reject documents whose timing or message data the engine cannot use.

	Ticks must be non-negative and tempos positive. Channels must lie in
	0-15; notes, velocities and programs in 0-127.

	Returns the document unchanged so the call can be chained.
	"""

	if document.ticks_per_beat <= 0:
		raise ParseError(f"ticks per beat must be positive, got {document.ticks_per_beat}")

	last_channel = midiplayer.constants.MIDI_CHANNELS - 1

	for track_index, track in enumerate(document.tracks):
		for event in track.events:
			if event.tick < 0:
				raise ParseError(f"Track {track_index}: negative tick {event.tick}")
			if isinstance(event, TempoEvent):
				if event.microseconds_per_beat <= 0:
					raise ParseError(
						f"Track {track_index}: tempo at tick {event.tick} must be positive, "
						f"got {event.microseconds_per_beat}"
					)
				continue
			_check_range(track_index, event, "channel", 0, last_channel)
			if isinstance(event, ProgramChangeEvent):
				_check_range(track_index, event, "program", 0, 127)
			else:
				_check_range(track_index, event, "note", 0, 127)
			if isinstance(event, NoteOnEvent):
				_check_range(track_index, event, "velocity", 0, 127)

	return document


def from_mido (midi_file: mido.MidiFile) -> MidiDocument:

	"""Convert a ``mido.MidiFile`` into a ``MidiDocument``.

	mido stores delta times; they are accumulated into absolute ticks. A
	``note_on`` with velocity 0 is treated as a note-off, as the MIDI
	standard allows. Messages the engine does not use are dropped.
	"""

	tracks: typing.List[Track] = []

	for mido_track in midi_file.tracks:

		tick = 0
		events: typing.List[RawEvent] = []

		for message in mido_track:

			tick += message.time

			if message.type == 'set_tempo':
				events.append(TempoEvent(tick=tick, microseconds_per_beat=message.tempo))

			elif message.type == 'program_change':
				events.append(ProgramChangeEvent(tick=tick, channel=message.channel, program=message.program))

			elif message.type == 'note_on' and message.velocity > 0:
				events.append(NoteOnEvent(tick=tick, note=message.note, velocity=message.velocity, channel=message.channel))

			elif message.type == 'note_off' or message.type == 'note_on':
				events.append(NoteOffEvent(tick=tick, note=message.note, channel=message.channel))

		tracks.append(Track(events=events))

	return validate(MidiDocument(ticks_per_beat=midi_file.ticks_per_beat, tracks=tracks))


def load (path: typing.Union[str, os.PathLike]) -> MidiDocument:

	"""Read a Standard MIDI File from disk.

	Raises:
		ParseError: If the file is missing, unreadable, or not valid MIDI.
	"""

	try:
		midi_file = mido.MidiFile(path)
	except (OSError, EOFError, ValueError, KeyError, IndexError) as e:
		raise ParseError(f"Cannot parse MIDI file {os.fspath(path)!r}: {e}") from e

	document = from_mido(midi_file)

	logger.info(f"Loaded {os.fspath(path)}: {len(document.tracks)} tracks, {document.ticks_per_beat} ticks per beat")

	return document


def _event_from_dict (data: typing.Dict[str, typing.Any]) -> typing.Optional[RawEvent]:

	"""Build one raw event from its dict form, or ``None`` for unused event types."""

	kind = data.get("type")
	tick = int(data["time"])

	if kind == "tempo":
		return TempoEvent(tick=tick, microseconds_per_beat=int(data["microsecondsPerBeat"]))

	if kind == "programChange":
		return ProgramChangeEvent(tick=tick, channel=int(data["channel"]), program=int(data["program"]))

	if kind == "noteOn":
		velocity = int(data.get("velocity", 0))
		if velocity == 0:
			return NoteOffEvent(tick=tick, note=int(data["note"]), channel=int(data.get("channel", 0)))
		return NoteOnEvent(tick=tick, note=int(data["note"]), velocity=velocity, channel=int(data.get("channel", 0)))

	if kind == "noteOff":
		return NoteOffEvent(tick=tick, note=int(data["note"]), channel=int(data.get("channel", 0)))

	return None


def from_dict (data: typing.Any) -> MidiDocument:

	"""Build a document from ``{"ticksPerBeat": int, "tracks": [{"events": [...]}]}``.

	Each event is a dict with ``type`` (``tempo``, ``programChange``,
	``noteOn`` or ``noteOff``) and an absolute ``time`` in ticks. Unknown
	event types are skipped.

	Raises:
		ParseError: If the structure is absent or malformed.
	"""

	if not isinstance(data, dict):
		raise ParseError("MIDI document must be a mapping")

	try:
		ticks_per_beat = int(data["ticksPerBeat"])
		tracks: typing.List[Track] = []

		for track_data in data["tracks"]:
			events = [_event_from_dict(event) for event in track_data["events"]]
			tracks.append(Track(events=[event for event in events if event is not None]))

	except (KeyError, TypeError, ValueError) as e:
		raise ParseError(f"Malformed MIDI document: {e!r}") from e

	return validate(MidiDocument(ticks_per_beat=ticks_per_beat, tracks=tracks))
