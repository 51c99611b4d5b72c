"""Timing and instrument constants.

Tempo values follow the Standard MIDI File convention of microseconds per
quarter note. When a file carries no tempo meta event the tempo is
``DEFAULT_MICROSECONDS_PER_BEAT`` (120 BPM) from tick 0.

Instrument keys are General MIDI program numbers (0-127) plus one reserved
key, ``PERCUSSION_KEY``, used for every note on the percussion channel
regardless of its program.
"""

DEFAULT_MICROSECONDS_PER_BEAT = 500000

MIDI_CHANNELS = 16
PERCUSSION_CHANNEL = 9

DEFAULT_PROGRAM = 0
PERCUSSION_KEY = 128

# Tempo scale is a percentage: 100 plays at the written speed.
DEFAULT_TEMPO_SCALE = 100
DEFAULT_VOLUME = 30

CLOCK_POLL_INTERVAL = 0.1

SAMPLE_RATE = 44100
RENDER_CHANNELS = 2
