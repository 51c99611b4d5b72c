class MidiPlayerError (Exception):

	"""Base class for all errors raised by midiplayer."""


class ParseError (MidiPlayerError):

	"""The source document is missing, malformed, or carries invalid timing data."""


class PlaybackError (MidiPlayerError):

	"""A transport operation cannot be carried out (for example, no document is loaded)."""


class ExportError (MidiPlayerError):

	"""Offline rendering or export failed; no partial output is produced."""
