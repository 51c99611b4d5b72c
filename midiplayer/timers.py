"""Discrete-event timer queue.

All deferred work in the player (note firings, visualizer note releases,
MIDI note-offs) goes through one ``TimerQueue``. Due times are kept in a
heap; each entry points at a slot in an arena of cancellation tokens, and a
``TimerToken`` addresses its slot by index plus a serial number so a stale
token can never cancel a slot that has since been reused.

A single asyncio task sleeps until the earliest due time, or until an
insertion wakes it, and then runs everything that is due. Entries with the
same due time run in insertion order.

The clock is injectable. Tests pass a fake clock and call ``fire_due()``
directly instead of waiting for the run loop.
"""

import asyncio
import dataclasses
import heapq
import itertools
import logging
import time
import typing


logger = logging.getLogger(__name__)


@dataclasses.dataclass (frozen=True)
class TimerToken:

	"""Handle for one scheduled entry, used to cancel it."""

	slot: int
	serial: int


@dataclasses.dataclass
class _Slot:

	serial: int
	callback: typing.Callable[..., typing.Any]
	args: typing.Tuple[typing.Any, ...]


class TimerQueue:

	"""Heap of due times driven by a single wake-up task."""

	def __init__ (self, clock: typing.Callable[[], float] = time.perf_counter) -> None:

		self.clock = clock

		self._slots: typing.List[typing.Optional[_Slot]] = []
		self._free: typing.List[int] = []
		self._heap: typing.List[typing.Tuple[float, int, int, int]] = []
		self._sequence = itertools.count()
		self._serials = itertools.count()
		self._active = 0

		self._wake = asyncio.Event()
		self._task: typing.Optional[asyncio.Task] = None


	def now (self) -> float:

		return self.clock()


	def __len__ (self) -> int:

		"""Number of entries still waiting to fire."""

		return self._active


	def call_at (self, due: float, callback: typing.Callable[..., typing.Any], *args: typing.Any) -> TimerToken:

		"""Run ``callback(*args)`` once the clock reaches ``due``."""

		serial = next(self._serials)
		slot = _Slot(serial=serial, callback=callback, args=args)

		if self._free:
			index = self._free.pop()
			self._slots[index] = slot
		else:
			index = len(self._slots)
			self._slots.append(slot)

		heapq.heappush(self._heap, (due, next(self._sequence), index, serial))
		self._active += 1
		self._wake.set()

		return TimerToken(slot=index, serial=serial)


	def call_later (self, delay: float, callback: typing.Callable[..., typing.Any], *args: typing.Any) -> TimerToken:

		"""Run ``callback(*args)`` after ``delay`` seconds (negative delays run at once)."""

		return self.call_at(self.clock() + max(0.0, delay), callback, *args)


	def cancel (self, token: TimerToken) -> bool:

		"""Retract a pending entry. Returns False if it already fired or was cancelled."""

		if token.slot >= len(self._slots):
			return False

		slot = self._slots[token.slot]

		if slot is None or slot.serial != token.serial:
			return False

		self._release(token.slot)

		return True


	def clear (self) -> None:

		"""Retract every pending entry."""

		self._slots = []
		self._free = []
		self._heap = []
		self._active = 0


	def _release (self, index: int) -> None:

		self._slots[index] = None
		self._free.append(index)
		self._active -= 1


	def next_due (self) -> typing.Optional[float]:

		"""Due time of the earliest live entry, or ``None`` when nothing is pending."""

		while self._heap:

			_, _, index, serial = self._heap[0]
			slot = self._slots[index] if index < len(self._slots) else None

			if slot is not None and slot.serial == serial:
				return self._heap[0][0]

			heapq.heappop(self._heap)

		return None


	def fire_due (self) -> int:

		"""Run every entry due at the current clock reading. Returns how many ran.

		A failing callback is logged and does not prevent the others from running.
		"""

		now = self.clock()
		fired = 0

		while self._heap and self._heap[0][0] <= now:

			_, _, index, serial = heapq.heappop(self._heap)
			slot = self._slots[index] if index < len(self._slots) else None

			if slot is None or slot.serial != serial:
				continue

			self._release(index)
			fired += 1

			try:
				slot.callback(*slot.args)
			except Exception:
				logger.exception("Timer callback failed")

		return fired


	def start (self) -> None:

		"""Start the wake-up task if it is not already running."""

		if self._task is None or self._task.done():
			self._task = asyncio.get_running_loop().create_task(self._run())


	async def _run (self) -> None:

		while True:

			self.fire_due()
			self._wake.clear()

			due = self.next_due()
			timeout = None if due is None else max(0.0, due - self.clock())

			try:
				await asyncio.wait_for(self._wake.wait(), timeout)
			except asyncio.TimeoutError:
				pass


	async def close (self) -> None:

		"""Stop the wake-up task and drop everything pending."""

		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None

		self.clear()
