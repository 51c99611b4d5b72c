"""Tick to seconds conversion.

MIDI positions are measured in ticks relative to the file's ticks-per-beat
resolution. Converting them to seconds needs every tempo change that occurs
before the position, because each segment between changes runs at its own
tempo. Until the first change the tempo is 120 BPM.

``ticks_to_seconds`` is the reference walk over the sorted changes.
``TempoMap`` precomputes the elapsed seconds at every change so repeated
lookups cost a bisection instead of a walk; it sums the segments in the
same order as the walk, so both give identical results.
"""

import bisect
import dataclasses
import typing

import midiplayer.constants
import midiplayer.midi_file


@dataclasses.dataclass (frozen=True)
class TempoChange:

	tick: int
	microseconds_per_beat: int


def build_tempo_map (tracks: typing.Sequence[midiplayer.midi_file.Track]) -> typing.List[TempoChange]:

	"""Collect tempo events from all tracks, sorted by tick.

	The sort is stable: changes at the same tick keep the order in which
	they were encountered (track order, then event order), and the last of
	them wins. No de-duplication is performed.
	"""

	changes = [
		TempoChange(tick=event.tick, microseconds_per_beat=event.microseconds_per_beat)
		for track in tracks
		for event in track.events
		if isinstance(event, midiplayer.midi_file.TempoEvent)
	]

	changes.sort(key=lambda change: change.tick)

	return changes


def _segment_seconds (ticks: int, ticks_per_beat: int, microseconds_per_beat: int) -> float:

	return (ticks / ticks_per_beat) * (microseconds_per_beat / 1000000)


def ticks_to_seconds (ticks: int, ticks_per_beat: int, sorted_changes: typing.Sequence[TempoChange]) -> float:

	"""Convert an absolute tick position to seconds.

	Parameters:
		ticks: Absolute tick position.
		ticks_per_beat: File resolution (assumed positive).
		sorted_changes: Tempo changes sorted by tick, as from ``build_tempo_map``.

	Only changes strictly before ``ticks`` affect the result, so a change
	exactly at the position does not alter the time of that position.
	"""

	seconds = 0.0
	current_tick = 0
	current_tempo = midiplayer.constants.DEFAULT_MICROSECONDS_PER_BEAT

	for change in sorted_changes:

		if change.tick >= ticks:
			break

		seconds += _segment_seconds(change.tick - current_tick, ticks_per_beat, current_tempo)
		current_tick = change.tick
		current_tempo = change.microseconds_per_beat

	seconds += _segment_seconds(ticks - current_tick, ticks_per_beat, current_tempo)

	return seconds


class TempoMap:

	"""Tempo changes of one document with precomputed elapsed seconds.

	Built fresh for every scheduling or export call, so it always reflects
	the document's current events.
	"""

	def __init__ (self, ticks_per_beat: int, changes: typing.Sequence[TempoChange]) -> None:

		self.ticks_per_beat = ticks_per_beat
		self.changes: typing.List[TempoChange] = list(changes)

		self._ticks: typing.List[int] = [change.tick for change in self.changes]

		# Seconds elapsed at each change, and the tempo in force from it onward.
		self._seconds: typing.List[float] = []
		self._tempos: typing.List[int] = []

		seconds = 0.0
		current_tick = 0
		current_tempo = midiplayer.constants.DEFAULT_MICROSECONDS_PER_BEAT

		for change in self.changes:
			seconds += _segment_seconds(change.tick - current_tick, ticks_per_beat, current_tempo)
			current_tick = change.tick
			current_tempo = change.microseconds_per_beat
			self._seconds.append(seconds)
			self._tempos.append(current_tempo)


	@classmethod
	def from_document (cls, document: midiplayer.midi_file.MidiDocument) -> "TempoMap":

		return cls(document.ticks_per_beat, build_tempo_map(document.tracks))


	def seconds_at (self, ticks: int) -> float:

		"""Seconds elapsed at an absolute tick position (same result as ``ticks_to_seconds``)."""

		index = bisect.bisect_left(self._ticks, ticks)

		if index == 0:
			return _segment_seconds(ticks, self.ticks_per_beat, midiplayer.constants.DEFAULT_MICROSECONDS_PER_BEAT)

		last = index - 1

		return self._seconds[last] + _segment_seconds(ticks - self._ticks[last], self.ticks_per_beat, self._tempos[last])


	def duration_of (self, document: midiplayer.midi_file.MidiDocument) -> float:

		"""Time of the latest event of any kind across all tracks, in seconds."""

		latest = 0.0

		for track in document.tracks:
			for event in track.events:
				latest = max(latest, self.seconds_at(event.tick))

		return latest
