"""Pair raw note events into timed notes.

The resolver walks every track's events in tick order, converts each tick to
seconds through a ``TempoMap`` and pairs note-ons with note-offs on the same
``(pitch, channel)`` key. Program changes update a per-channel program map
so each note knows which instrument was selected when it started.

Pairing rules:

- A note-on replaces any pending note-on on the same key; the earlier one
  is discarded and never becomes a note.
- A note-off without a pending note-on is ignored.
- A note-on still pending at the end of the document never becomes a note.
- Channel 9 always resolves to the percussion kit, whatever its program.

Results are recomputed from the document on every call and never cached.
"""

import dataclasses
import heapq
import logging
import typing

import midiplayer.constants
import midiplayer.midi_file
import midiplayer.tempo_map


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class Note:

	"""A resolved note in musical (unscaled) seconds."""

	pitch: int
	velocity: int
	channel: int
	start_seconds: float
	duration_seconds: float
	instrument: int = midiplayer.constants.DEFAULT_PROGRAM
	track: int = 0


@dataclasses.dataclass (frozen=True)
class ProgramPoint:

	"""A program change placed in time, with its effective instrument key."""

	seconds: float
	channel: int
	program: int
	instrument: int


def instrument_key (channel: int, program: int) -> int:

	"""The instrument key used for a program on a channel (percussion on channel 9)."""

	if channel == midiplayer.constants.PERCUSSION_CHANNEL:
		return midiplayer.constants.PERCUSSION_KEY

	return program


class ChannelProgramMap:

	"""Current program of each of the 16 MIDI channels (default 0)."""

	def __init__ (self) -> None:

		self.programs: typing.List[int] = [midiplayer.constants.DEFAULT_PROGRAM] * midiplayer.constants.MIDI_CHANNELS


	def set (self, channel: int, program: int) -> None:

		self.programs[channel] = program


	def instrument_for (self, channel: int) -> int:

		return instrument_key(channel, self.programs[channel])


@dataclasses.dataclass
class Resolution:

	"""Everything derived from one pass over a document."""

	notes: typing.List[Note]
	program_points: typing.List[ProgramPoint]

	def programs_at (self, cutoff_seconds: float) -> ChannelProgramMap:

		"""Program map state after all program changes at or before ``cutoff_seconds``."""

		program_map = ChannelProgramMap()

		for point in self.program_points:
			if point.seconds > cutoff_seconds:
				break
			program_map.set(point.channel, point.program)

		return program_map


	def instrument_keys_from (self, offset_seconds: float) -> typing.List[int]:

		"""Distinct instrument keys selected by program changes at or after ``offset_seconds``."""

		keys: typing.List[int] = []

		for point in self.program_points:
			if point.seconds >= offset_seconds and point.instrument not in keys:
				keys.append(point.instrument)

		return keys


def _merged_events (document: midiplayer.midi_file.MidiDocument) -> typing.Iterator[typing.Tuple[int, midiplayer.midi_file.RawEvent]]:

	"""Yield ``(track_index, event)`` across all tracks in tick order.

	Ties keep track order, then the order within the track.
	"""

	streams = [
		[(event.tick, track_index, position, event) for position, event in enumerate(track.events)]
		for track_index, track in enumerate(document.tracks)
	]

	for _, track_index, _, event in heapq.merge(*streams, key=lambda item: (item[0], item[1], item[2])):
		yield track_index, event


def resolve (document: midiplayer.midi_file.MidiDocument, tempo_map: typing.Optional[midiplayer.tempo_map.TempoMap] = None) -> Resolution:

	"""Resolve a document into notes and program change points.

	Parameters:
		document: The source document.
		tempo_map: A tempo map for the document. Built from the document when omitted.

	Notes are returned ordered by start time; notes starting together keep
	the order in which their note-offs were encountered.
	"""

	if tempo_map is None:
		tempo_map = midiplayer.tempo_map.TempoMap.from_document(document)

	program_map = ChannelProgramMap()
	pending: typing.Dict[typing.Tuple[int, int], typing.Tuple[midiplayer.midi_file.NoteOnEvent, float, int, int]] = {}
	notes: typing.List[Note] = []
	program_points: typing.List[ProgramPoint] = []

	for track_index, event in _merged_events(document):

		if isinstance(event, midiplayer.midi_file.ProgramChangeEvent):

			program_map.set(event.channel, event.program)

			program_points.append(ProgramPoint(
				seconds = tempo_map.seconds_at(event.tick),
				channel = event.channel,
				program = event.program,
				instrument = instrument_key(event.channel, event.program)
			))

		elif isinstance(event, midiplayer.midi_file.NoteOnEvent):

			key = (event.note, event.channel)

			if key in pending:
				logger.debug(f"Discarding unterminated note {event.note} on channel {event.channel} (retriggered at tick {event.tick})")

			pending[key] = (event, tempo_map.seconds_at(event.tick), program_map.instrument_for(event.channel), track_index)

		elif isinstance(event, midiplayer.midi_file.NoteOffEvent):

			key = (event.note, event.channel)
			started = pending.pop(key, None)

			if started is None:
				continue

			on_event, on_seconds, instrument, on_track = started
			off_seconds = tempo_map.seconds_at(event.tick)

			notes.append(Note(
				pitch = on_event.note,
				velocity = on_event.velocity,
				channel = on_event.channel,
				start_seconds = on_seconds,
				duration_seconds = off_seconds - on_seconds,
				instrument = instrument,
				track = on_track
			))

	if pending:
		logger.debug(f"{len(pending)} note(s) never received a note-off and were dropped")

	notes.sort(key=lambda note: note.start_seconds)

	return Resolution(notes=notes, program_points=program_points)
