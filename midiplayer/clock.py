"""Virtual playback clock.

Virtual time is the playback position in musical seconds. While running it
advances at ``tempo_scale_percent / 100`` musical seconds per wall-clock
second from the point where it was started:

	current_time = virtual_anchor + (now - wall_anchor) * scale / 100

A poll task samples the position every ``poll_interval`` seconds and calls
``on_end`` once it reaches the piece's duration. Already scheduled firings
are never resampled; a change of position or tempo stops this clock and
starts a new run from the new ``(position, scale)`` pair.
"""

import asyncio
import logging
import time
import typing

import midiplayer.constants


logger = logging.getLogger(__name__)


class PlaybackClock:

	"""Tracks virtual time against an injectable wall clock."""

	def __init__ (
		self,
		wall_clock: typing.Callable[[], float] = time.perf_counter,
		poll_interval: float = midiplayer.constants.CLOCK_POLL_INTERVAL
	) -> None:

		self.wall_clock = wall_clock
		self.poll_interval = poll_interval

		self.running = False
		self.tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE
		self.duration = 0.0
		self.virtual_anchor = 0.0
		self.wall_anchor = 0.0

		self._on_end: typing.Optional[typing.Callable[[], typing.Any]] = None
		self._task: typing.Optional[asyncio.Task] = None


	def start (
		self,
		position: float,
		tempo_scale_percent: float,
		duration: float,
		on_end: typing.Optional[typing.Callable[[], typing.Any]] = None
	) -> None:

		"""Anchor the clock at ``position`` and start polling for the end of the piece.

		The poll task is only started when an event loop is running.
		"""

		self.virtual_anchor = position
		self.wall_anchor = self.wall_clock()
		self.tempo_scale_percent = tempo_scale_percent
		self.duration = duration
		self.running = True
		self._on_end = on_end

		self._cancel_poll()

		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return

		self._task = loop.create_task(self._poll_loop())


	def current_time (self) -> float:

		"""Current virtual position; frozen at the anchor while stopped."""

		if not self.running:
			return self.virtual_anchor

		elapsed = self.wall_clock() - self.wall_anchor

		return self.virtual_anchor + elapsed * (self.tempo_scale_percent / 100)


	def stop (self) -> float:

		"""Freeze the clock and return the position it reached."""

		position = self.current_time()

		self.virtual_anchor = position
		self.running = False
		self._on_end = None
		self._cancel_poll()

		return position


	def reset (self, position: float = 0.0) -> None:

		self.stop()
		self.virtual_anchor = position


	def poll (self) -> bool:

		"""Sample the position once; fire ``on_end`` if the piece is over.

		Returns True when the end was reached on this poll.
		"""

		if not self.running or self.current_time() < self.duration:
			return False

		on_end = self._on_end
		self._on_end = None

		logger.debug(f"End of piece reached at {self.current_time():.3f}s")

		if on_end is not None:
			on_end()

		return True


	async def _poll_loop (self) -> None:

		while self.running:

			await asyncio.sleep(self.poll_interval)

			if self.poll():
				return


	def _cancel_poll (self) -> None:

		if self._task is None:
			return

		try:
			current = asyncio.current_task()
		except RuntimeError:
			current = None

		# The poll task returns on its own after firing on_end.
		if self._task is not current:
			self._task.cancel()

		self._task = None
