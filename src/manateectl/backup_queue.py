"""In-memory queue of pending backup requests."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from typing import Any

LOGGER = logging.getLogger(__name__)

PushListener = Callable[[Any], None]


class BackupQueue:
    """Hold backup requests, each identified by a ``uuid``.

    Requests may be objects with a ``uuid`` attribute or mappings with a
    ``"uuid"`` key. :meth:`pop` returns the most recently pushed request, so
    despite the name this behaves as a stack.
    """

    def __init__(self) -> None:
        self._items: list[Any] = []
        self._listeners: list[PushListener] = []

    def subscribe(self, listener: PushListener) -> None:
        """Call *listener* with every request pushed from now on."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: PushListener) -> None:
        """Stop notifying *listener*; unknown listeners are ignored."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def push(self, request: Any) -> None:
        """Append *request* to the tail and notify push listeners."""
        LOGGER.info("pushed backup request %s into queue", _uuid_of(request))
        self._items.append(request)
        for listener in list(self._listeners):
            listener(request)

    def pop(self) -> Any | None:
        """Remove and return the newest request, or ``None`` when empty."""
        request = self._items.pop() if self._items else None
        LOGGER.info(
            "popped backup request %s from queue",
            _uuid_of(request) if request is not None else None,
        )
        return request

    def get(self, uuid: str) -> Any | None:
        """Return the first request whose uuid is *uuid*, or ``None``."""
        LOGGER.info("getting backup request with uuid %s", uuid)
        for request in self._items:
            if _uuid_of(request) == uuid:
                LOGGER.debug("found backup request %s", uuid)
                return request
        return None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._items))


def _uuid_of(request: Any) -> object:
    if isinstance(request, Mapping):
        return request.get("uuid")
    return getattr(request, "uuid", None)


__all__ = ["BackupQueue", "PushListener"]
