"""
The registry's notification envelope, as posted to the webhook.
See https://distribution.github.io/distribution/about/notifications/

Only the fields used here are modelled, anything else the registry sends
(request, actor, source, ...) is ignored.
"""

import functools
from typing import Final
from typing import TypedDict

from pydantic import TypeAdapter
from pydantic import ValidationError

from utils.errors import PayloadDecodeError


class Target(TypedDict, total=False):
    mediaType: str
    size: int
    digest: str
    repository: str
    url: str
    tag: str


class Event(TypedDict, total=False):
    id: str
    timestamp: str
    action: str
    target: Target | None


class Notification(TypedDict, total=False):
    events: list[Event | None] | None


_NOTIFICATION_ADAPTER: Final = TypeAdapter(Notification | None)


class NotificationPayload:
    """
    For all decoded notification JSON, store the full data, for ease of
    extending later, if need be.
    """

    def __init__(self, data: dict) -> None:
        self._data = data


class EventTarget(NotificationPayload):
    """
    What the event is about: a manifest (or blob) in a repository
    """

    def __init__(self, data: Target) -> None:
        super().__init__(data)  # type: ignore[arg-type]
        self.media_type: str = self._data.get("mediaType", "")
        self.size: int = self._data.get("size", 0)
        # The content digest, e.g. "sha256:..."
        self.digest: str = self._data.get("digest", "")
        self.repository: str = self._data.get("repository", "")
        self.url: str = self._data.get("url", "")
        # Not every push carries a tag, pushes by digest do not
        self.tag: str = self._data.get("tag", "")

    def __str__(self) -> str:
        return f"{self.repository}@{self.digest}"


class RegistryEvent(NotificationPayload):
    def __init__(self, data: Event) -> None:
        super().__init__(data)  # type: ignore[arg-type]
        self.id: str = self._data.get("id", "")
        self.timestamp: str = self._data.get("timestamp", "")
        self.action: str = self._data.get("action", "")
        self.target = EventTarget(self._data.get("target") or {})

    def __str__(self) -> str:
        return f"Event {self.id} ({self.action} {self.target})"


class NotificationBatch(NotificationPayload):
    """
    One POST worth of events, kept in the order the registry sent them
    """

    def __init__(self, data: Notification | None) -> None:
        # A null body is a notification without events
        super().__init__(data or {})  # type: ignore[arg-type]

    @functools.cached_property
    def events(self) -> list[RegistryEvent]:
        return [RegistryEvent(event or {}) for event in self._data.get("events") or []]

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)

    @classmethod
    def from_json(cls, body: bytes | str) -> "NotificationBatch":
        """
        Decodes and validates a request body.  Raises PayloadDecodeError if
        it is not JSON, or not shaped like a notification.
        """
        try:
            data = _NOTIFICATION_ADAPTER.validate_json(body)
        except ValidationError as e:
            raise PayloadDecodeError(f"Invalid notification payload: {e.error_count()} error(s)") from e
        return cls(data)
