"""
Error taxonomy and degradation events.

Load failures for row columns and coordinates do not propagate: they are
converted into default-filled data. Each such conversion is recorded as a
``DegradationEvent`` so callers can tell a column of zeros from a column that
failed to load.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger


class CartoError(Exception):
    """Base class for all cellcarto errors."""


class NotFoundError(CartoError, KeyError):
    """A requested array, attribute document or column path is absent."""

    def __init__(self, path: str, message: str | None = None):
        self.path = path
        super().__init__(message or f"Path not found in store: {path}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0])


class DecodeError(CartoError, ValueError):
    """A categorical code indexes outside its categories array."""


class GeneNotFoundError(NotFoundError):
    """A gene name is not present in the matrix's gene index."""

    def __init__(self, gene_name: str):
        self.gene_name = gene_name
        super().__init__(gene_name, f"Gene '{gene_name}' not found")


class NoCoordinateSourceError(CartoError):
    """Fewer than two coordinate sources exist, so nothing can be plotted."""


@dataclass(frozen=True)
class DegradationEvent:
    """A load that fell back to default values instead of failing."""

    kind: str
    target: str
    reason: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventLog:
    """Bounded record of degradation events for one session."""

    def __init__(self, max_entries: int = 100):
        self.max_entries = max_entries
        self._events: list[DegradationEvent] = []

    def record(self, kind: str, target: str, reason: str) -> DegradationEvent:
        """Store an event and log it as a warning."""
        event = DegradationEvent(kind=kind, target=target, reason=reason)
        self._events.append(event)
        self._events = self._events[-self.max_entries :]
        logger.warning(f"[{kind}] {target}: {reason}")
        return event

    def for_target(self, target: str) -> list[DegradationEvent]:
        """Events recorded against a single column, gene or coordinate."""
        return [event for event in self._events if event.target == target]

    def __iter__(self):
        return iter(list(self._events))

    def __len__(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        self._events.clear()
