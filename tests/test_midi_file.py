import pathlib

import mido
import pytest

import midiplayer.midi_file

from midiplayer.errors import ParseError
from midiplayer.midi_file import MidiDocument, NoteOffEvent, NoteOnEvent, ProgramChangeEvent, TempoEvent, Track


def _write_midi_file (path: pathlib.Path) -> None:

	midi_file = mido.MidiFile(ticks_per_beat=96)

	conductor = mido.MidiTrack()
	conductor.append(mido.MetaMessage('set_tempo', tempo=400000, time=0))
	conductor.append(mido.MetaMessage('set_tempo', tempo=600000, time=192))
	midi_file.tracks.append(conductor)

	melody = mido.MidiTrack()
	melody.append(mido.Message('program_change', channel=1, program=24, time=0))
	melody.append(mido.Message('note_on', channel=1, note=60, velocity=90, time=96))
	melody.append(mido.Message('control_change', channel=1, control=7, value=100, time=0))
	melody.append(mido.Message('note_on', channel=1, note=60, velocity=0, time=96))
	melody.append(mido.Message('note_on', channel=1, note=64, velocity=70, time=0))
	melody.append(mido.Message('note_off', channel=1, note=64, velocity=0, time=48))
	midi_file.tracks.append(melody)

	midi_file.save(str(path))


def test_load_converts_delta_times_to_ticks (tmp_path: pathlib.Path) -> None:

	path = tmp_path / "song.mid"
	_write_midi_file(path)

	document = midiplayer.midi_file.load(path)

	assert document.ticks_per_beat == 96
	assert document.tracks[0].events == [
		TempoEvent(tick=0, microseconds_per_beat=400000),
		TempoEvent(tick=192, microseconds_per_beat=600000),
	]
	assert document.tracks[1].events == [
		ProgramChangeEvent(tick=0, channel=1, program=24),
		NoteOnEvent(tick=96, note=60, velocity=90, channel=1),
		NoteOffEvent(tick=192, note=60, channel=1),
		NoteOnEvent(tick=192, note=64, velocity=70, channel=1),
		NoteOffEvent(tick=240, note=64, channel=1),
	]


def test_missing_file_raises_parse_error (tmp_path: pathlib.Path) -> None:

	with pytest.raises(ParseError):
		midiplayer.midi_file.load(tmp_path / "absent.mid")


def test_garbage_file_raises_parse_error (tmp_path: pathlib.Path) -> None:

	path = tmp_path / "garbage.mid"
	path.write_bytes(b"this is not a standard midi file")

	with pytest.raises(ParseError):
		midiplayer.midi_file.load(path)


def test_validate_rejects_bad_timing () -> None:

	with pytest.raises(ParseError):
		midiplayer.midi_file.validate(MidiDocument(ticks_per_beat=0))

	with pytest.raises(ParseError):
		midiplayer.midi_file.validate(MidiDocument(ticks_per_beat=480, tracks=[
			Track(events=[TempoEvent(tick=0, microseconds_per_beat=0)]),
		]))

	with pytest.raises(ParseError):
		midiplayer.midi_file.validate(MidiDocument(ticks_per_beat=480, tracks=[
			Track(events=[NoteOffEvent(tick=-1, note=60, channel=0)]),
		]))


def test_from_dict () -> None:

	document = midiplayer.midi_file.from_dict({
		"ticksPerBeat": 480,
		"tracks": [{"events": [
			{"type": "tempo", "time": 0, "microsecondsPerBeat": 250000},
			{"type": "programChange", "time": 0, "channel": 2, "program": 48},
			{"type": "noteOn", "time": 0, "note": 60, "velocity": 100, "channel": 2},
			{"type": "noteOn", "time": 240, "note": 60, "velocity": 0, "channel": 2},
			{"type": "lyric", "time": 240, "text": "la"},
			{"type": "noteOff", "time": 480, "note": 61},
		]}],
	})

	assert document.tracks[0].events == [
		TempoEvent(tick=0, microseconds_per_beat=250000),
		ProgramChangeEvent(tick=0, channel=2, program=48),
		NoteOnEvent(tick=0, note=60, velocity=100, channel=2),
		NoteOffEvent(tick=240, note=60, channel=2),
		NoteOffEvent(tick=480, note=61, channel=0),
	]


@pytest.mark.parametrize("data", [
	[],
	{"tracks": []},
	{"ticksPerBeat": 480, "tracks": [{"events": [{"type": "noteOn", "note": 60}]}]},
	{"ticksPerBeat": 480, "tracks": [{"events": [{"type": "tempo", "time": 0, "microsecondsPerBeat": -5}]}]},
	{"ticksPerBeat": -96, "tracks": []},
])
def test_from_dict_rejects_malformed_documents (data: object) -> None:

	with pytest.raises(ParseError):
		midiplayer.midi_file.from_dict(data)


@pytest.mark.parametrize("event", [
	{"type": "noteOn", "time": 0, "note": 60, "velocity": 100, "channel": 16},
	{"type": "noteOff", "time": 0, "note": 60, "channel": -1},
	{"type": "noteOn", "time": 0, "note": 128, "velocity": 100, "channel": 0},
	{"type": "noteOn", "time": 0, "note": 60, "velocity": 200, "channel": 0},
	{"type": "programChange", "time": 0, "channel": 0, "program": 128},
	{"type": "programChange", "time": 0, "channel": 16, "program": 0},
])
def test_out_of_range_message_data_raises_parse_error (event: dict) -> None:

	with pytest.raises(ParseError):
		midiplayer.midi_file.from_dict({"ticksPerBeat": 480, "tracks": [{"events": [event]}]})


def test_validate_accepts_range_limits () -> None:

	document = MidiDocument(ticks_per_beat=480, tracks=[Track(events=[
		ProgramChangeEvent(tick=0, channel=15, program=127),
		NoteOnEvent(tick=0, note=127, velocity=127, channel=15),
		NoteOffEvent(tick=10, note=0, channel=0),
	])])

	assert midiplayer.midi_file.validate(document) is document
