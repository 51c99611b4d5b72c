"""Transport state machine.

``TransportController`` is the player. It owns the single playback session,
and is the only component that drives the scheduler and the clock.

States and transitions:

	play(t)        STOPPED | PAUSED -> PLAYING   (t defaults to the session position)
	pause()        PLAYING          -> PAUSED    (position frozen)
	stop()         PLAYING | PAUSED -> STOPPED   (position reset to 0)
	seek(t)        any              -> same state, anchored at t
	set_tempo(s)   any              -> same state, same position, new scale

Every transition runs under one ``asyncio.Lock`` so two transitions never
interleave. Position and tempo changes tear down the running clock and the
scheduled generation and start both again from the new position and scale.

```python
player = midiplayer.transport.TransportController(renderer=renderer)
await player.load(midiplayer.midi_file.load("song.mid"))
await player.play()
await player.seek(30.0)
await player.set_tempo(150)
await player.wait_until_stopped()
```

Events (see ``on_event``): ``"play"`` (position), ``"pause"`` (position),
``"seek"`` (position), ``"tempo"`` (scale), ``"note"`` (note), ``"stop"``
and ``"end"``.
"""

import asyncio
import dataclasses
import enum
import logging
import time
import typing

import midiplayer.clock
import midiplayer.constants
import midiplayer.event_emitter
import midiplayer.instruments
import midiplayer.midi_file
import midiplayer.resolver
import midiplayer.scheduler
import midiplayer.synth
import midiplayer.tempo_map
import midiplayer.timers
from midiplayer.errors import PlaybackError


logger = logging.getLogger(__name__)


class PlaybackState (enum.Enum):

	STOPPED = "stopped"
	PLAYING = "playing"
	PAUSED = "paused"


@dataclasses.dataclass
class PlaybackSession:

	"""Mutable playback state, reset to STOPPED but never replaced."""

	state: PlaybackState = PlaybackState.STOPPED
	tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE
	position: float = 0.0
	wall_anchor: float = 0.0
	schedule: typing.Optional[midiplayer.scheduler.ScheduledPlayback] = None


class TransportController:

	"""Plays one ``MidiDocument`` at a time through a renderer and a visualizer."""

	def __init__ (
		self,
		renderer: typing.Optional[midiplayer.synth.SoundRenderer] = None,
		visualizer: typing.Optional[midiplayer.synth.Visualizer] = None,
		cache: typing.Optional[midiplayer.instruments.InstrumentCache] = None,
		timers: typing.Optional[midiplayer.timers.TimerQueue] = None,
		wall_clock: typing.Callable[[], float] = time.perf_counter,
		poll_interval: float = midiplayer.constants.CLOCK_POLL_INTERVAL,
		volume: float = midiplayer.constants.DEFAULT_VOLUME,
		fallback_synth: bool = True
	) -> None:

		"""Create a stopped player.

		Parameters:
			renderer: Receives every note that fires. Without one, notes only
				reach the visualizer and the ``"note"`` event.
			visualizer: Notified of note starts and releases.
			cache: Instrument cache (a new one over the packaged bank by default).
				The cache outlives individual plays.
			timers: Timer queue for deferred work. Its clock becomes the wall
				clock of the player; otherwise one is created on ``wall_clock``.
			wall_clock: Monotonic seconds source used when ``timers`` is omitted.
			poll_interval: End-of-piece poll period in seconds.
			volume: Master volume, 0-100.
			fallback_synth: When True, notes whose instrument is unavailable are
				still sent to the renderer (with no instrument) instead of dropped.
		"""

		self.timers = timers if timers is not None else midiplayer.timers.TimerQueue(clock=wall_clock)
		self.cache = cache if cache is not None else midiplayer.instruments.InstrumentCache()
		self.scheduler = midiplayer.scheduler.PlaybackScheduler(self.timers, self.cache)
		self.clock = midiplayer.clock.PlaybackClock(wall_clock=self.timers.clock, poll_interval=poll_interval)

		self.renderer = renderer
		self.visualizer: midiplayer.synth.Visualizer = visualizer if visualizer is not None else midiplayer.synth.NullVisualizer()
		self.fallback_synth = fallback_synth
		self.events = midiplayer.event_emitter.EventEmitter()

		self.document: typing.Optional[midiplayer.midi_file.MidiDocument] = None
		self.session = PlaybackSession()
		self._duration = 0.0
		self._volume = 0.0
		self.set_volume(volume)

		self._lock = asyncio.Lock()
		self._stopped = asyncio.Event()
		self._stopped.set()
		self._end_tasks: typing.Set[asyncio.Task] = set()


	@property
	def state (self) -> PlaybackState:

		return self.session.state


	@property
	def tempo_scale_percent (self) -> float:

		return self.session.tempo_scale_percent


	@property
	def duration (self) -> float:

		"""Length of the loaded piece in musical seconds."""

		return self._duration


	@property
	def position (self) -> float:

		"""Current playback position in musical seconds."""

		if self.session.state == PlaybackState.PLAYING:
			return self.clock.current_time()

		return self.session.position


	@property
	def volume (self) -> float:

		return self._volume


	def set_volume (self, volume: float) -> None:

		"""Set the master volume (0-100). Applies to notes fired from now on."""

		if not 0 <= volume <= 100:
			raise ValueError("Volume must be between 0 and 100")

		self._volume = volume


	def on_event (self, event_name: str, callback: typing.Callable[..., typing.Any]) -> None:

		self.events.on(event_name, callback)


	async def load (self, document: midiplayer.midi_file.MidiDocument) -> None:

		"""Replace the loaded document. Playback is stopped first."""

		midiplayer.midi_file.validate(document)

		async with self._lock:

			self._stop_locked()

			self.document = document
			self._duration = midiplayer.tempo_map.TempoMap.from_document(document).duration_of(document)

		logger.info(f"Document loaded: {len(document.tracks)} tracks, {self._duration:.2f}s")


	async def play (self, position: typing.Optional[float] = None) -> None:

		"""Start or resume playback.

		Parameters:
			position: Musical seconds to start from. Defaults to the session
				position: 0 after a stop, the frozen position after a pause.

		Raises:
			PlaybackError: If no document is loaded.
		"""

		async with self._lock:

			if self.document is None:
				raise PlaybackError("No document loaded")

			if self.session.state == PlaybackState.PLAYING:
				logger.debug("play() ignored: already playing")
				return

			self._start_locked(self.session.position if position is None else position)


	async def pause (self) -> None:

		async with self._lock:

			if self.session.state != PlaybackState.PLAYING:
				logger.debug(f"pause() ignored in state {self.session.state.value}")
				return

			position = self._halt()
			self.session.state = PlaybackState.PAUSED
			self.session.position = position

			logger.info(f"Paused at {position:.2f}s")

			self.events.emit("pause", position)


	async def stop (self) -> None:

		async with self._lock:
			self._stop_locked()


	async def seek (self, position: float) -> None:

		"""Move to ``position`` (musical seconds), keeping the current state."""

		if position < 0:
			raise ValueError("Seek position cannot be negative")

		async with self._lock:

			prior = self.session.state

			self._halt()
			self.session.position = position

			if prior == PlaybackState.PLAYING:
				self._start_locked(position)

			logger.info(f"Seek to {position:.2f}s ({prior.value})")

			self.events.emit("seek", position)


	async def set_tempo (self, tempo_scale_percent: float) -> None:

		"""Change the playback speed (100 = written tempo), keeping position and state."""

		if tempo_scale_percent <= 0:
			raise ValueError("Tempo scale must be positive")

		async with self._lock:

			prior = self.session.state
			position = self._halt()

			self.session.tempo_scale_percent = tempo_scale_percent
			self.session.position = position

			if prior == PlaybackState.PLAYING:
				self._start_locked(position)

			logger.info(f"Tempo scale set to {tempo_scale_percent}%")

			self.events.emit("tempo", tempo_scale_percent)


	async def wait_until_stopped (self) -> None:

		await self._stopped.wait()


	async def close (self) -> None:

		"""Stop playback and release timers, tasks, and in-flight loads."""

		await self.stop()

		for task in list(self._end_tasks):
			task.cancel()

		await self.timers.close()
		await self.cache.close()


	def _start_locked (self, position: float) -> None:

		assert self.document is not None

		session = self.session
		resolution = midiplayer.resolver.resolve(self.document, midiplayer.tempo_map.TempoMap.from_document(self.document))

		session.state = PlaybackState.PLAYING
		session.position = position
		self._stopped.clear()

		# The default instrument backs every key that fails to load.
		self.cache.ensure_loading(midiplayer.constants.DEFAULT_PROGRAM)

		self.visualizer.start()
		self.timers.start()

		self.clock.start(position, session.tempo_scale_percent, self._duration, on_end=self._on_end)
		session.wall_anchor = self.clock.wall_anchor

		session.schedule = self.scheduler.schedule(
			resolution,
			position,
			session.tempo_scale_percent,
			self._fire_note,
			is_live = lambda: session.state == PlaybackState.PLAYING
		)

		# Also covers percussion and programs selected before the offset.
		for key in dict.fromkeys(entry.note.instrument for entry in session.schedule.notes):
			self.cache.ensure_loading(key)

		logger.info(f"Playing from {position:.2f}s at {session.tempo_scale_percent}% ({len(session.schedule)} notes)")

		self.events.emit("play", position)


	def _halt (self) -> float:

		"""Cancel the scheduled generation and freeze the clock; return the position."""

		if self.session.schedule is not None:
			self.session.schedule.cancel()
			self.session.schedule = None

		if self.session.state == PlaybackState.PLAYING:
			return self.clock.stop()

		return self.session.position


	def _stop_locked (self) -> None:

		prior = self.session.state

		self._halt()
		self.clock.reset(0.0)

		self.session.state = PlaybackState.STOPPED
		self.session.position = 0.0
		self._stopped.set()

		if prior != PlaybackState.STOPPED:
			self.visualizer.stop()
			logger.info("Stopped")
			self.events.emit("stop")


	def _on_end (self) -> None:

		schedule = self.session.schedule
		task = asyncio.get_running_loop().create_task(self._finish(schedule))
		self._end_tasks.add(task)
		task.add_done_callback(self._end_tasks.discard)


	async def _finish (self, schedule: typing.Optional[midiplayer.scheduler.ScheduledPlayback]) -> None:

		async with self._lock:

			# A transition since the end was detected has already replaced this run.
			if self.session.state != PlaybackState.PLAYING or self.session.schedule is not schedule:
				return

			logger.info("End of piece")

			self._stop_locked()
			self.events.emit("end")


	def _fire_note (self, note: midiplayer.resolver.Note) -> None:

		instrument = self.cache.get_handle(note.instrument)

		# get_handle may have answered with the default instrument; later notes
		# on this key pick up the real one once it has loaded.
		if self.cache.state(note.instrument) == midiplayer.instruments.EntryState.UNLOADED:
			self.cache.ensure_loading(note.instrument)

		if instrument is None:

			if not self.fallback_synth:
				logger.debug(f"Dropping note {note.pitch}: instrument {note.instrument} unavailable")
				return

		factor = self.session.tempo_scale_percent / 100
		duration = max(0.0, note.duration_seconds / factor)
		gain = (note.velocity / 127) * (self._volume / 100)

		if self.renderer is not None:
			self.renderer.play_note(instrument, note.pitch, 0.0, duration, gain)

		self.visualizer.add_note(note.pitch, note.velocity)
		self.timers.call_later(duration, self.visualizer.remove_note, note.pitch)

		self.events.emit("note", note)
