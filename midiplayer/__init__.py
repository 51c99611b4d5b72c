"""
midiplayer - tempo-accurate MIDI playback scheduling and export.

midiplayer turns a parsed MIDI document into timed note events. It converts
ticks to seconds through the document's tempo map, pairs note-ons with
note-offs, loads instruments once per program no matter how many notes ask
for them, and drives playback through a transport that stays consistent
across play, pause, stop, seek and tempo changes.

The same tempo and note math feeds two outputs:

- **Live playback.** ``TransportController`` fires notes on a timer queue
  against a tempo-scalable virtual clock, sending them to a renderer (for
  example a MIDI output port) and a visualizer.
- **Export.** ``ExportPlanner`` plans every note without a wall clock, for
  a JSON summary in the piece's native timing or an offline WAV render at
  the chosen speed.

Minimal example:

    ```python
    import asyncio
    import midiplayer

    async def main ():
        player = midiplayer.TransportController()
        await player.load(midiplayer.load("song.mid"))
        await player.play()
        await player.wait_until_stopped()
        await player.close()

    asyncio.run(main())
    ```

Package-level exports: ``TransportController``, ``ExportPlanner``,
``InstrumentCache``, ``MidiDocument``, ``load``.
"""

import midiplayer.export
import midiplayer.instruments
import midiplayer.midi_file
import midiplayer.transport


ExportPlanner = midiplayer.export.ExportPlanner
InstrumentCache = midiplayer.instruments.InstrumentCache
MidiDocument = midiplayer.midi_file.MidiDocument
TransportController = midiplayer.transport.TransportController
load = midiplayer.midi_file.load
