"""Command-line entry point.

Usage::

	python -m midiplayer play song.mid --tempo 120 --start 30
	python -m midiplayer export-json song.mid song.json
	python -m midiplayer export-wav song.mid song.wav --tempo 80
"""

import argparse
import asyncio
import logging
import signal
import sys
import typing

import midiplayer.config
import midiplayer.export
import midiplayer.instruments
import midiplayer.midi_file
import midiplayer.midi_utils
import midiplayer.synth
import midiplayer.timers
import midiplayer.transport
from midiplayer.errors import MidiPlayerError


# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class StopRequest:

	"""Signal handler that stops a player, holding each stop task until it finishes."""

	def __init__ (self, player: midiplayer.transport.TransportController) -> None:

		self.player = player
		self.tasks: typing.Set[asyncio.Task] = set()


	def __call__ (self) -> None:

		task = asyncio.get_running_loop().create_task(self.player.stop())
		self.tasks.add(task)
		task.add_done_callback(self.tasks.discard)


async def play (document: midiplayer.midi_file.MidiDocument, config: midiplayer.config.PlayerConfig, tempo: float, start: float, output: typing.Optional[str]) -> int:

	"""Play a document on a MIDI output port until it ends or Ctrl+C is pressed."""

	_, port = midiplayer.midi_utils.select_output_device(output or config.midi_output)

	if port is None:
		return 1

	timers = midiplayer.timers.TimerQueue()
	renderer = midiplayer.synth.MidiOutRenderer(port, timers)

	player = midiplayer.transport.TransportController(
		renderer = renderer,
		cache = midiplayer.instruments.InstrumentCache(config.make_fetcher()),
		timers = timers,
		poll_interval = config.poll_interval,
		volume = config.volume,
		fallback_synth = config.fallback_synth
	)

	loop = asyncio.get_running_loop()

	try:
		loop.add_signal_handler(signal.SIGINT, StopRequest(player))
	except NotImplementedError:
		pass

	try:
		await player.load(document)
		await player.set_tempo(tempo)
		await player.play(start)
		await player.wait_until_stopped()
	finally:
		await player.close()
		renderer.close()

	return 0


async def export_wav (document: midiplayer.midi_file.MidiDocument, config: midiplayer.config.PlayerConfig, path: str, tempo: float) -> int:

	planner = midiplayer.export.ExportPlanner(
		cache = midiplayer.instruments.InstrumentCache(config.make_fetcher()),
		sample_rate = config.sample_rate,
		fallback_synth = config.fallback_synth
	)

	try:
		await planner.write_wav(document, path, tempo_scale_percent=tempo, volume=config.volume)
	finally:
		await planner.cache.close()

	return 0


def main (argv: typing.Optional[typing.List[str]] = None) -> int:

	parser = argparse.ArgumentParser(prog="midiplayer", description="Play and export MIDI files.")
	parser.add_argument("--config", default="midiplayer.yaml", help="YAML configuration file")

	commands = parser.add_subparsers(dest="command", required=True)

	play_parser = commands.add_parser("play", help="Play a MIDI file on a MIDI output port")
	play_parser.add_argument("file")
	play_parser.add_argument("--tempo", type=float, default=None, help="Tempo scale in percent (100 = written tempo)")
	play_parser.add_argument("--start", type=float, default=0.0, help="Start position in seconds")
	play_parser.add_argument("--output", default=None, help="MIDI output port name")

	json_parser = commands.add_parser("export-json", help="Export notes as JSON")
	json_parser.add_argument("file")
	json_parser.add_argument("out")

	wav_parser = commands.add_parser("export-wav", help="Render to a WAV file")
	wav_parser.add_argument("file")
	wav_parser.add_argument("out")
	wav_parser.add_argument("--tempo", type=float, default=None, help="Tempo scale in percent (100 = written tempo)")

	args = parser.parse_args(argv)

	try:
		config = midiplayer.config.load_config(args.config)
		document = midiplayer.midi_file.load(args.file)

		if args.command == "play":
			tempo = args.tempo if args.tempo is not None else config.tempo_scale
			return asyncio.run(play(document, config, tempo, args.start, args.output))

		if args.command == "export-json":
			midiplayer.export.ExportPlanner().write_json(document, args.out)
			return 0

		tempo = args.tempo if args.tempo is not None else config.tempo_scale
		return asyncio.run(export_wav(document, config, args.out, tempo))

	except (MidiPlayerError, ValueError) as e:
		logger.error(str(e))
		return 1


if __name__ == "__main__":
	sys.exit(main())
