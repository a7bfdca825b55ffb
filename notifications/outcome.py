import enum
from dataclasses import dataclass
from dataclasses import field

from regtools.models import Descriptor


class LayerStatus(enum.StrEnum):
    DESCRIBED = "described"
    FETCH_FAILED = "fetch-failed"
    DESCRIBE_FAILED = "describe-failed"


class EventStatus(enum.StrEnum):
    # Not about a manifest, e.g. a blob upload
    IGNORED = "ignored"
    RESOLVE_FAILED = "resolve-failed"
    FETCH_FAILED = "fetch-failed"
    NOT_OPTED_IN = "not-opted-in"
    PUSH_FAILED = "push-failed"
    TAG_FAILED = "tag-failed"
    # Something unexpected was raised
    ERRORED = "errored"
    PUBLISHED = "published"


# The statuses which mean something went wrong, rather than nothing to do
FAILED_EVENT_STATUSES = frozenset(
    {
        EventStatus.RESOLVE_FAILED,
        EventStatus.FETCH_FAILED,
        EventStatus.PUSH_FAILED,
        EventStatus.TAG_FAILED,
        EventStatus.ERRORED,
    },
)


@dataclass(slots=True)
class LayerOutcome:
    index: int
    digest: str
    status: LayerStatus
    description: str | None = None
    error: Exception | None = None

    @property
    def described(self) -> bool:
        return self.status is LayerStatus.DESCRIBED


@dataclass(slots=True)
class EventOutcome:
    """
    What happened to a single event.  Every event ends up with exactly one
    of these, whatever failed along the way.
    """

    event_id: str
    repository: str
    digest: str
    status: EventStatus
    layers: list[LayerOutcome] = field(default_factory=list)
    # The republished manifest, once pushed
    pushed: Descriptor | None = None
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.status in FAILED_EVENT_STATUSES

    @property
    def described_count(self) -> int:
        return sum(1 for layer in self.layers if layer.described)

    @property
    def partial(self) -> bool:
        """
        True if some, but not all, of the layers were described
        """
        return 0 < self.described_count < len(self.layers)

    def __str__(self) -> str:
        text = f"{self.repository}@{self.digest}: {self.status}"
        if self.layers:
            text += f" ({self.described_count}/{len(self.layers)} layers described)"
        return text


@dataclass(slots=True)
class BatchOutcome:
    events: list[EventOutcome] = field(default_factory=list)

    def add(self, outcome: EventOutcome) -> None:
        self.events.append(outcome)

    def count(self, status: EventStatus) -> int:
        return sum(1 for event in self.events if event.status is status)

    @property
    def failed(self) -> list[EventOutcome]:
        return [event for event in self.events if event.failed]

    def summary(self) -> str:
        if not self.events:
            return "no events"
        counts: dict[str, int] = {}
        for event in self.events:
            counts[event.status] = counts.get(event.status, 0) + 1
        return ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
