"""Publish/subscribe bus used to broadcast task and download state changes."""

from typing import Any, Callable, Dict, List, Tuple

from loguru import logger
from pydantic import BaseModel


ALL_SUBJECTS = "*"
DOWNLOAD_JOBS = "downloads"

Listener = Callable[..., None]
Unsubscribe = Callable[[], None]


def _snapshot(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    return value


class NotificationBus:
    """Per-subject listener registry with synchronous snapshot delivery.

    Subjects are plain strings, usually a task id or a download job id.
    Listeners registered on ``ALL_SUBJECTS`` receive every publication with
    the subject prepended to the payload.
    """

    def __init__(self):
        """Initialize an empty bus."""
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, subject: str, listener: Listener) -> Unsubscribe:
        """Register ``listener`` for ``subject`` and return its unsubscribe callable."""
        listeners = list(self._listeners.get(subject, []))
        listeners.append(listener)
        self._listeners[subject] = listeners

        def _unsubscribe() -> None:
            current = list(self._listeners.get(subject, []))
            try:
                current.remove(listener)
            except ValueError:
                return
            if current:
                self._listeners[subject] = current
            else:
                self._listeners.pop(subject, None)

        return _unsubscribe

    def publish(self, subject: str, *payload: Any) -> int:
        """Deliver a snapshot of ``payload`` to the subject's listeners.

        Returns the number of listeners that were called.
        """
        snapshot: Tuple[Any, ...] = tuple(_snapshot(value) for value in payload)
        targets = [(listener, snapshot) for listener in self._listeners.get(subject, ())]
        if subject != ALL_SUBJECTS:
            targets.extend(
                (listener, (subject,) + snapshot)
                for listener in self._listeners.get(ALL_SUBJECTS, ())
            )

        for listener, args in targets:
            try:
                listener(*args)
            except Exception:
                logger.exception(f"Listener for subject {subject} raised")
        return len(targets)

    def clear(self, subject: str) -> None:
        """Drop every listener registered for ``subject``."""
        self._listeners.pop(subject, None)

    def listener_count(self, subject: str) -> int:
        """Number of listeners registered directly on ``subject``."""
        return len(self._listeners.get(subject, ()))
