import logging
from collections.abc import Callable
from typing import Any

Callback = Callable[..., Any]


class EventHub:
    """
    Synchronous observer registry.

    Callbacks run in registration order on the emitting task. A callback that raises is
    logged and skipped so one bad observer cannot break the emitter or the others.
    """

    def __init__(self, *events: str, logger: logging.Logger | None = None) -> None:
        self._callbacks: dict[str, list[Callback]] = {event: [] for event in events}
        self._logger = logger or logging.getLogger(__name__)

    def subscribe(self, event: str, callback: Callback) -> Callable[[], None]:
        """Register `callback` for `event`. Returns a function that unsubscribes it."""
        if event not in self._callbacks:
            raise ValueError(f"Unknown event: {event}. Known events: {', '.join(self._callbacks)}")
        self._callbacks[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks[event]:
                self._callbacks[event].remove(callback)

        return unsubscribe

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._callbacks[event]):
            try:
                callback(*args)
            except Exception as e:
                self._logger.error(f"Error in '{event}' observer {callback!r}: {e}", exc_info=True)
