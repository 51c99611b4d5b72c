"""16-bit PCM WAV encoding.

Samples are floats in [-1, 1] shaped ``(frames, channels)``. Values outside
the range are clamped; negative samples scale by 32768 and positive ones by
32767 so both ends of the range map onto the full 16-bit span. The output is
a standard 44-byte-header RIFF/WAVE file written with the ``wave`` module.
"""

import io
import wave

import numpy as np


def to_pcm16 (samples: np.ndarray) -> np.ndarray:

	"""Convert float samples to little-endian 16-bit integers."""

	clamped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
	scaled = np.where(clamped < 0, clamped * 0x8000, clamped * 0x7FFF)

	return np.round(scaled).astype('<i2')


def encode (samples: np.ndarray, sample_rate: int) -> bytes:

	"""Encode a ``(frames, channels)`` float buffer (or a mono 1-D buffer) as WAV bytes."""

	data = np.asarray(samples)

	if data.ndim == 1:
		data = data[:, np.newaxis]

	if data.ndim != 2:
		raise ValueError(f"Expected a (frames, channels) buffer, got shape {data.shape}")

	pcm = to_pcm16(data)

	buf = io.BytesIO()

	with wave.open(buf, 'wb') as wf:
		wf.setnchannels(pcm.shape[1])
		wf.setsampwidth(2)
		wf.setframerate(sample_rate)
		wf.writeframes(np.ascontiguousarray(pcm).tobytes())

	return buf.getvalue()

