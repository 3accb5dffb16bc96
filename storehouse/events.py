"""Lifecycle notifications raised while a write request is processed.

Each accepted request produces at most two events: ``*-requested`` once it
has been authenticated, and ``uploaded``/``fetched`` once the file is
committed. Consumers implement :class:`Notifier`; a failing consumer is
logged and never changes the outcome of the request.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, DefaultDict, Dict, Iterable, List, Optional

from .logging_utils import human_filesize, sanitize_log_value

UPLOAD_REQUESTED = "upload-requested"
UPLOADED = "uploaded"
FETCH_REQUESTED = "fetch-requested"
FETCHED = "fetched"
EVENT_NAMES = (UPLOAD_REQUESTED, UPLOADED, FETCH_REQUESTED, FETCHED)

logger = logging.getLogger("storehouse.events")


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    path: str
    location: str
    directory: str
    url: Optional[str] = None
    size: Optional[int] = None
    content_type: Optional[str] = None
    encoding: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.name in (UPLOADED, FETCHED)

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class Notifier:
    """Receives lifecycle events. The default implementation ignores them."""

    def notify(self, event: LifecycleEvent) -> None:
        return None


class CallbackNotifier(Notifier):
    """Dispatch events to callbacks registered per event name."""

    def __init__(self) -> None:
        self._callbacks: DefaultDict[str, List[Callable[[LifecycleEvent], Any]]] = defaultdict(list)

    def on(self, name: str, callback: Callable[[LifecycleEvent], Any]) -> "CallbackNotifier":
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown lifecycle event: {name}")
        self._callbacks[name].append(callback)
        return self

    def notify(self, event: LifecycleEvent) -> None:
        for callback in list(self._callbacks.get(event.name, ())):
            callback(event)


class CompositeNotifier(Notifier):
    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, event: LifecycleEvent) -> None:
        for notifier in self._notifiers:
            emit(notifier, event)


def _timestamp() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


class LoggingNotifier(Notifier):
    """Writes one human-readable line per event, as the console server does."""

    def __init__(self, target: Optional[logging.Logger] = None) -> None:
        self._logger = target or logger

    def format(self, event: LifecycleEvent) -> str:
        path = sanitize_log_value(event.path)
        url = sanitize_log_value(event.url)
        size = human_filesize(event.size if event.size is not None else -1)
        if event.name == UPLOAD_REQUESTED:
            return (
                f"{_timestamp()} upload REQUESTED: {path} ({event.location}) "
                f"{event.content_type} (encoding: {event.encoding})"
            )
        if event.name == UPLOADED:
            return (
                f"{_timestamp()} uploaded: {path} ({event.location}) {size} "
                f"{event.content_type} (encoding: {event.encoding})"
            )
        if event.name == FETCH_REQUESTED:
            return f'{_timestamp()} url-fetch REQUESTED: "{url}": {path} ({event.location})'
        return f'{_timestamp()} fetched url "{url}": {path} ({event.location}) {size} {event.content_type}'

    def notify(self, event: LifecycleEvent) -> None:
        self._logger.info(self.format(event))


def emit(notifier: Optional[Notifier], event: LifecycleEvent) -> None:
    """Deliver *event*, logging rather than propagating consumer failures."""

    if notifier is None:
        return
    try:
        notifier.notify(event)
    except Exception:
        logger.exception("notifier_failed event=%s path=%s", event.name, sanitize_log_value(event.path))
