"""Offline export.

Export runs the same tempo map and resolver as live playback, but plans
every note up front instead of waiting on the wall clock:

- ``plan()`` lists every note with its start and duration divided by the
  tempo factor, using the same formula as the live scheduler.
- ``to_structured()`` produces a JSON-ready summary in the piece's native
  timing. The tempo scale is deliberately not applied here.
- ``render_audio()`` and ``export_wav()`` render the scaled plan, so the
  audio reflects the chosen playback speed.

Rendering failures raise ``ExportError``; no partial output is returned or
written.
"""

import asyncio
import dataclasses
import json
import logging
import os
import typing

import numpy as np

import midiplayer.constants
import midiplayer.instruments
import midiplayer.midi_file
import midiplayer.resolver
import midiplayer.scheduler
import midiplayer.synth
import midiplayer.tempo_map
import midiplayer.wav
from midiplayer.errors import ExportError


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class PlannedNote:

	note: midiplayer.resolver.Note
	start_seconds: float
	duration_seconds: float
	instrument: int


class ExportPlanner:

	"""Builds deterministic, wall-clock independent note plans and exports."""

	def __init__ (
		self,
		cache: typing.Optional[midiplayer.instruments.InstrumentCache] = None,
		sample_rate: int = midiplayer.constants.SAMPLE_RATE,
		channels: int = midiplayer.constants.RENDER_CHANNELS,
		fallback_synth: bool = True
	) -> None:

		"""Create a planner.

		Parameters:
			cache: Instrument cache, usually shared with the live player so
				instruments are only fetched once.
			sample_rate: Output sample rate in Hz.
			channels: Output channel count.
			fallback_synth: Render notes without an instrument using the
				fallback sound instead of leaving them out.
		"""

		self.cache = cache if cache is not None else midiplayer.instruments.InstrumentCache()
		self.sample_rate = sample_rate
		self.channels = channels
		self.fallback_synth = fallback_synth


	def plan (
		self,
		document: midiplayer.midi_file.MidiDocument,
		tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE
	) -> typing.List[PlannedNote]:

		"""Every note of the document with tempo-scaled start and duration, in start order."""

		factor = midiplayer.scheduler.scale_factor(tempo_scale_percent)
		resolution = midiplayer.resolver.resolve(document, midiplayer.tempo_map.TempoMap.from_document(document))

		return [
			PlannedNote(
				note = note,
				start_seconds = note.start_seconds / factor,
				duration_seconds = note.duration_seconds / factor,
				instrument = note.instrument
			)
			for note in resolution.notes
		]


	def to_structured (self, document: midiplayer.midi_file.MidiDocument) -> typing.Dict[str, typing.Any]:

		"""``{"tracks": [{"notes": [{"note", "time", "duration", "velocity"}]}]}`` in unscaled seconds.

		There is one entry per source track, each listing the notes that
		started on that track.
		"""

		resolution = midiplayer.resolver.resolve(document, midiplayer.tempo_map.TempoMap.from_document(document))
		tracks: typing.List[typing.Dict[str, typing.Any]] = [{"notes": []} for _ in document.tracks]

		for note in resolution.notes:
			tracks[note.track]["notes"].append({
				"note": note.pitch,
				"time": note.start_seconds,
				"duration": note.duration_seconds,
				"velocity": note.velocity,
			})

		return {"tracks": tracks}


	def write_json (self, document: midiplayer.midi_file.MidiDocument, path: typing.Union[str, os.PathLike]) -> None:

		data = self.to_structured(document)

		with open(path, 'w') as f:
			json.dump(data, f, indent=2)

		logger.info(f"Exported {sum(len(track['notes']) for track in data['tracks'])} notes to {os.fspath(path)}")


	async def render_audio (
		self,
		document: midiplayer.midi_file.MidiDocument,
		tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE,
		volume: float = midiplayer.constants.DEFAULT_VOLUME
	) -> np.ndarray:

		"""Render the document to a ``(frames, channels)`` float buffer.

		Instruments are loaded before rendering. The buffer covers the
		piece's duration at the chosen speed.

		Raises:
			ExportError: If rendering fails.
		"""

		factor = midiplayer.scheduler.scale_factor(tempo_scale_percent)
		planned = self.plan(document, tempo_scale_percent)
		duration = midiplayer.tempo_map.TempoMap.from_document(document).duration_of(document) / factor

		await self.cache.preload_many(entry.instrument for entry in planned)

		renderer = midiplayer.synth.OfflineRenderer(
			length_seconds = duration,
			sample_rate = self.sample_rate,
			channels = self.channels,
			master_gain = volume / 100
		)

		skipped = 0

		for entry in planned:

			instrument = self.cache.get_handle(entry.instrument)

			if instrument is None and not self.fallback_synth:
				skipped += 1
				continue

			renderer.play_note(instrument, entry.note.pitch, entry.start_seconds, entry.duration_seconds, entry.note.velocity / 127)

		if skipped:
			logger.debug(f"{skipped} notes skipped: no instrument available")

		try:
			buffer = await asyncio.to_thread(renderer.render)
		except Exception as e:
			raise ExportError(f"Offline render failed: {e}") from e

		logger.info(f"Rendered {len(planned)} notes, {duration:.2f}s at {tempo_scale_percent}%")

		return buffer


	async def export_wav (
		self,
		document: midiplayer.midi_file.MidiDocument,
		tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE,
		volume: float = midiplayer.constants.DEFAULT_VOLUME
	) -> bytes:

		"""Render the document and encode it as 16-bit PCM WAV bytes."""

		buffer = await self.render_audio(document, tempo_scale_percent, volume)

		try:
			return midiplayer.wav.encode(buffer, self.sample_rate)
		except Exception as e:
			raise ExportError(f"WAV encoding failed: {e}") from e


	async def write_wav (
		self,
		document: midiplayer.midi_file.MidiDocument,
		path: typing.Union[str, os.PathLike],
		tempo_scale_percent: float = midiplayer.constants.DEFAULT_TEMPO_SCALE,
		volume: float = midiplayer.constants.DEFAULT_VOLUME
	) -> None:

		"""Render to a WAV file. Nothing is written if rendering fails."""

		data = await self.export_wav(document, tempo_scale_percent, volume)

		with open(path, 'wb') as f:
			f.write(data)

		logger.info(f"Wrote {len(data)} bytes to {os.fspath(path)}")
