"""Turn resolved notes into timed firings.

The scheduler works in two time domains. Notes and the start offset are in
musical seconds (tempo-map seconds at the written tempo). Firing delays are
wall-clock seconds: musical times divided by the tempo factor
(``tempo_scale_percent / 100``), so a scale of 200 plays twice as fast and
halves every delay.

For a start offset ``t`` and factor ``f`` each note gets

	scaled_start  = note.start_seconds / f
	scaled_offset = t / f
	delay         = max(0, scaled_start - scaled_offset)

and notes with ``scaled_start < scaled_offset`` are skipped.

The offset is divided by the factor as well, rather than compared with the
scaled start as-is. The offset stays a musical position, so resuming after
a tempo change continues from the same point in the piece, and at any
offset a scale of 200 gives exactly half the delays of a scale of 100. At
scale 100 both readings agree.

Every call produces a new ``ScheduledPlayback`` generation. Cancelling it
retracts its pending firings and closes its gate, so nothing from that
generation reaches the callback afterwards, even an entry that was already
due when the cancel happened.
"""

import dataclasses
import logging
import typing

import midiplayer.instruments
import midiplayer.resolver
import midiplayer.timers


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class ScheduledNote:

	note: midiplayer.resolver.Note
	delay: float


class ScheduledPlayback:

	"""One generation of scheduled firings, cancellable as a whole."""

	def __init__ (self, timers: midiplayer.timers.TimerQueue) -> None:

		self._timers = timers
		self._tokens: typing.List[midiplayer.timers.TimerToken] = []
		self.notes: typing.List[ScheduledNote] = []
		self.live = True


	def __len__ (self) -> int:

		return len(self.notes)


	def cancel (self) -> None:

		"""Retract every pending firing. Safe to call more than once."""

		self.live = False

		for token in self._tokens:
			self._timers.cancel(token)

		self._tokens.clear()


def scale_factor (tempo_scale_percent: float) -> float:

	if tempo_scale_percent <= 0:
		raise ValueError("Tempo scale must be positive")

	return tempo_scale_percent / 100


class PlaybackScheduler:

	"""Registers note firings on a ``TimerQueue`` and starts instrument loads."""

	def __init__ (
		self,
		timers: midiplayer.timers.TimerQueue,
		cache: typing.Optional[midiplayer.instruments.InstrumentCache] = None
	) -> None:

		self.timers = timers
		self.cache = cache


	def schedule (
		self,
		resolution: midiplayer.resolver.Resolution,
		start_offset_seconds: float,
		tempo_scale_percent: float,
		on_note: typing.Callable[[midiplayer.resolver.Note], typing.Any],
		is_live: typing.Callable[[], bool] = lambda: True
	) -> ScheduledPlayback:

		"""Schedule every note at or after ``start_offset_seconds``.

		Parameters:
			resolution: Notes and program changes of the document.
			start_offset_seconds: Playback position in musical seconds.
			tempo_scale_percent: Playback speed, 100 = written tempo.
			on_note: Called with each note when it is due.
			is_live: Checked at fire time; a false result turns the firing
				into a no-op.

		Program changes at or after the offset start their instrument loads
		here, whether or not playback is live, so instruments are usually
		ready before the first note that needs them.
		"""

		factor = scale_factor(tempo_scale_percent)
		scaled_offset = start_offset_seconds / factor

		if self.cache is not None:
			for key in resolution.instrument_keys_from(start_offset_seconds):
				self.cache.ensure_loading(key)

		playback = ScheduledPlayback(self.timers)

		base = self.timers.now()

		def fire (note: midiplayer.resolver.Note) -> None:

			if playback.live and is_live():
				on_note(note)

		for note in resolution.notes:

			scaled_start = note.start_seconds / factor

			if scaled_start < scaled_offset:
				continue

			delay = max(0.0, scaled_start - scaled_offset)

			playback._tokens.append(self.timers.call_at(base + delay, fire, note))
			playback.notes.append(ScheduledNote(note=note, delay=delay))

		logger.debug(f"Scheduled {len(playback.notes)} of {len(resolution.notes)} notes from {start_offset_seconds:.3f}s at {tempo_scale_percent}%")

		return playback
