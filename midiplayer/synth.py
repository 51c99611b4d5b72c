"""Sound renderers and the visualizer interface.

The player hands every note to a renderer as
``play_note(instrument, pitch, start, duration, gain)``, where ``instrument``
is an installed ``Instrument`` or ``None`` when no instrument is available
and the renderer should use its fallback sound.

Two renderers are provided:

- ``OfflineRenderer`` accumulates notes into a numpy buffer, with ``start``
  measured in seconds from the beginning of the buffer. ``render()``
  synthesizes the buffer.
- ``MidiOutRenderer`` routes notes to a MIDI output port (hardware or a
  software synth), with ``start`` measured in seconds from now. Note-offs
  are sent through the player's ``TimerQueue``.
"""

import logging
import math
import typing

import mido
import numpy as np

import midiplayer.constants
import midiplayer.instruments
import midiplayer.timers


logger = logging.getLogger(__name__)


# Used when a note has no instrument.
FALLBACK_ZONE = midiplayer.instruments.Zone(waveform="triangle", attack=0.005, release=0.1, gain=0.8)


@typing.runtime_checkable
class SoundRenderer (typing.Protocol):

	def play_note (
		self,
		instrument: typing.Optional[midiplayer.instruments.Instrument],
		pitch: int,
		start: float,
		duration: float,
		gain: float
	) -> None:
		...


@typing.runtime_checkable
class Visualizer (typing.Protocol):

	"""Receives note activity; return values are ignored."""

	def add_note (self, pitch: int, velocity: int) -> None:
		...

	def remove_note (self, pitch: int) -> None:
		...

	def start (self) -> None:
		...

	def stop (self) -> None:
		...


class NullVisualizer:

	"""Visualizer that ignores everything."""

	def add_note (self, pitch: int, velocity: int) -> None:
		return None

	def remove_note (self, pitch: int) -> None:
		return None

	def start (self) -> None:
		return None

	def stop (self) -> None:
		return None


def pitch_to_frequency (pitch: int) -> float:

	return 440.0 * 2 ** ((pitch - 69) / 12.0)


def oscillator (waveform: str, frequency: float, t: np.ndarray, rng: np.random.Generator) -> np.ndarray:

	"""One of the instrument waveforms, in [-1, 1], sampled at times ``t``."""

	phase = frequency * t

	if waveform == "sine":
		return np.sin(2 * np.pi * phase)

	if waveform == "triangle":
		return 2 * np.abs(2 * (phase - np.floor(phase + 0.5))) - 1

	if waveform == "square":
		return np.where(np.sin(2 * np.pi * phase) >= 0, 1.0, -1.0)

	if waveform == "sawtooth":
		return 2 * (phase - np.floor(phase + 0.5))

	if waveform == "noise":
		return rng.uniform(-1.0, 1.0, len(t))

	raise ValueError(f"Unknown waveform {waveform!r}")


def envelope (t: np.ndarray, duration: float, attack: float, release: float) -> np.ndarray:

	"""Linear attack, sustain for ``duration``, then linear release to silence."""

	env = np.ones(len(t))

	if attack > 0:
		env = np.minimum(env, t / attack)

	if release > 0:
		env *= np.clip(1 - (t - duration) / release, 0.0, 1.0)
	else:
		env[t >= duration] = 0.0

	return env


class OfflineRenderer:

	"""Renders notes into a fixed-length floating point buffer.

	The buffer has shape ``(frames, channels)``; notes are mixed to every
	channel. Noise is drawn from a seeded generator so renders repeat exactly.
	"""

	def __init__ (
		self,
		length_seconds: float,
		sample_rate: int = midiplayer.constants.SAMPLE_RATE,
		channels: int = midiplayer.constants.RENDER_CHANNELS,
		master_gain: float = 1.0,
		seed: int = 0
	) -> None:

		if sample_rate <= 0:
			raise ValueError("Sample rate must be positive")

		if channels <= 0:
			raise ValueError("Channel count must be positive")

		self.sample_rate = sample_rate
		self.channels = channels
		self.master_gain = master_gain
		self.frames = max(0, math.ceil(sample_rate * length_seconds))
		self.seed = seed

		self.notes: typing.List[typing.Tuple[typing.Optional[midiplayer.instruments.Instrument], int, float, float, float]] = []


	def play_note (
		self,
		instrument: typing.Optional[midiplayer.instruments.Instrument],
		pitch: int,
		start: float,
		duration: float,
		gain: float
	) -> None:

		self.notes.append((instrument, pitch, start, duration, gain))


	def render (self) -> np.ndarray:

		"""Synthesize every queued note and return the mixed buffer."""

		buffer = np.zeros((self.frames, self.channels), dtype=np.float64)
		rng = np.random.default_rng(self.seed)

		for instrument, pitch, start, duration, gain in self.notes:

			zone = instrument.zone_for(pitch) if instrument is not None else FALLBACK_ZONE
			duration = max(0.0, duration)

			first = int(round(start * self.sample_rate))
			length = min(math.ceil((duration + zone.release) * self.sample_rate), self.frames - first)

			if first < 0 or length <= 0:
				continue

			t = np.arange(length) / self.sample_rate
			signal = oscillator(zone.waveform, pitch_to_frequency(pitch), t, rng)
			signal *= envelope(t, duration, zone.attack, zone.release)
			signal *= gain * zone.gain * self.master_gain

			buffer[first:first + length, :] += signal[:, np.newaxis]

		return buffer


class MidiOutRenderer:

	"""Plays notes on a MIDI output port.

	Each instrument program is given its own channel the first time it is
	used, announced with a program change. The percussion kit always plays
	on channel 9 and notes without an instrument play on channel 0.
	"""

	def __init__ (self, port: typing.Any, timers: midiplayer.timers.TimerQueue) -> None:

		self.port = port
		self.timers = timers

		self._channels: typing.Dict[int, int] = {}
		self._free_channels = [
			channel for channel in range(midiplayer.constants.MIDI_CHANNELS)
			if channel != midiplayer.constants.PERCUSSION_CHANNEL
		]
		self.active_notes: typing.Set[typing.Tuple[int, int]] = set()


	def _channel_for (self, instrument: typing.Optional[midiplayer.instruments.Instrument]) -> int:

		if instrument is None:
			return 0

		if instrument.program == midiplayer.constants.PERCUSSION_KEY:
			return midiplayer.constants.PERCUSSION_CHANNEL

		if instrument.program not in self._channels:

			# Reuse channels round-robin once all fifteen are taken.
			channel = self._free_channels.pop(0)
			self._free_channels.append(channel)

			for program, assigned in list(self._channels.items()):
				if assigned == channel:
					del self._channels[program]

			self._channels[instrument.program] = channel
			self._send(mido.Message('program_change', channel=channel, program=instrument.program))

		return self._channels[instrument.program]


	def _send (self, message: mido.Message) -> None:

		try:
			self.port.send(message)
		except Exception:
			logger.exception("MIDI send failed (device may be disconnected)")


	def _note_on (self, channel: int, pitch: int, velocity: int, duration: float) -> None:

		self._send(mido.Message('note_on', channel=channel, note=pitch, velocity=velocity))
		self.active_notes.add((channel, pitch))
		self.timers.call_later(duration, self._note_off, channel, pitch)


	def _note_off (self, channel: int, pitch: int) -> None:

		self._send(mido.Message('note_off', channel=channel, note=pitch, velocity=0))
		self.active_notes.discard((channel, pitch))


	def play_note (
		self,
		instrument: typing.Optional[midiplayer.instruments.Instrument],
		pitch: int,
		start: float,
		duration: float,
		gain: float
	) -> None:

		channel = self._channel_for(instrument)
		velocity = max(1, min(127, int(round(gain * 127))))
		duration = max(0.0, duration)

		if start > 0:
			self.timers.call_later(start, self._note_on, channel, pitch, velocity, duration)
		else:
			self._note_on(channel, pitch, velocity, duration)


	def panic (self) -> None:

		"""Release every sounding note."""

		for channel, pitch in list(self.active_notes):
			self._send(mido.Message('note_off', channel=channel, note=pitch, velocity=0))

		self.active_notes.clear()


	def close (self) -> None:

		self.panic()
		self.port.close()
