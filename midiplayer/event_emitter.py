"""Named event notifications for the transport.

Listeners may be plain functions or coroutine functions. ``emit`` is safe
to call from synchronous code such as timer callbacks: plain listeners run
immediately and coroutine listeners are started as tasks on the running
loop. A failing listener is logged and never interrupts the emitter.
"""

import asyncio
import inspect
import logging
import typing


logger = logging.getLogger(__name__)


CallbackType = typing.Callable[..., typing.Any]


class EventEmitter:

	def __init__ (self) -> None:

		self._listeners: typing.Dict[str, typing.List[CallbackType]] = {}
		self._tasks: typing.Set[asyncio.Task] = set()


	def on (self, event_name: str, callback: CallbackType) -> None:

		"""Register a callback for an event name."""

		self._listeners.setdefault(event_name, []).append(callback)


	def off (self, event_name: str, callback: CallbackType) -> None:

		"""Unregister a callback.

		Raises ``ValueError`` if the callback is not registered for the event.
		"""

		if callback not in self._listeners.get(event_name, []):
			raise ValueError(f"Callback not registered for event {event_name!r}")

		self._listeners[event_name].remove(callback)


	def emit (self, event_name: str, *args: typing.Any) -> None:

		"""Notify listeners without waiting for coroutine listeners to finish."""

		for callback in list(self._listeners.get(event_name, [])):

			if inspect.iscoroutinefunction(callback):
				task = asyncio.get_running_loop().create_task(self._guarded(event_name, callback, *args))
				self._tasks.add(task)
				task.add_done_callback(self._tasks.discard)
				continue

			try:
				callback(*args)
			except Exception:
				logger.exception(f"Listener for {event_name!r} failed")


	async def emit_async (self, event_name: str, *args: typing.Any) -> None:

		"""Notify listeners and wait for coroutine listeners to finish."""

		pending: typing.List[typing.Awaitable[typing.Any]] = []

		for callback in list(self._listeners.get(event_name, [])):

			if inspect.iscoroutinefunction(callback):
				pending.append(self._guarded(event_name, callback, *args))
				continue

			try:
				callback(*args)
			except Exception:
				logger.exception(f"Listener for {event_name!r} failed")

		if pending:
			await asyncio.gather(*pending)


	async def _guarded (self, event_name: str, callback: CallbackType, *args: typing.Any) -> None:

		try:
			await callback(*args)
		except Exception:
			logger.exception(f"Listener for {event_name!r} failed")
