"""
Observability Layer

RESPONSIBILITY: Logging setup and collection of domain events
ALLOWED INPUTS: DomainEvents emitted by every other layer
OUTPUTS: Filtered event lists, per-type counts, log output

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter events before recording them (only on read)
- Make decisions based on collected data
- Raise into the emitting layer

BOUNDARY ENFORCEMENT:
=====================
- Events are frozen records; the collector stores them as received
- Collection is append-only
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging
import logging.handlers
import os
import pathlib
import threading

from ..contracts.events import DomainEvent, EventType

PACKAGE_LOGGER = "constraint_memory"

# Cache configured loggers so repeated calls don't duplicate handlers
_CONFIGURED: Dict[str, logging.Logger] = {}


@dataclass
class ObservabilityConfig:
    """Configuration for logging and event collection."""
    log_level: str = "INFO"
    log_dir: Optional[str] = None      # None: console only
    max_events: int = 10000


def configure_logging(config: Optional[ObservabilityConfig] = None, name: str = PACKAGE_LOGGER) -> logging.Logger:
    """
    Attach a console handler (and a rotating file handler when log_dir is
    set) to the package logger. Safe to call repeatedly.
    """
    if name in _CONFIGURED:
        return _CONFIGURED[name]

    config = config or ObservabilityConfig()
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    # Guard against double-adding handlers if the interpreter reloads modules
    if not logger.handlers:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger.addHandler(console)

        if config.log_dir:
            pathlib.Path(config.log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(config.log_dir, f"{name}.log"),
                maxBytes=5_000_000, backupCount=5, encoding="utf-8"
            )
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
            )
            logger.addHandler(file_handler)

    _CONFIGURED[name] = logger
    return logger


class EventCollector:
    """
    Append-only collector of domain events.

    Subscribers registered with subscribe() receive each event after it is
    recorded; the collector is itself a valid EventSink.
    """

    def __init__(self, max_events: int = 10000):
        self._events: List[DomainEvent] = []
        self._subscribers: List[Callable[[DomainEvent], None]] = []
        self._max_events = max_events
        self._dropped = 0
        self._mutex = threading.Lock()

    def __call__(self, event: DomainEvent) -> None:
        self.collect(event)

    def collect(self, event: DomainEvent) -> None:
        with self._mutex:
            self._events.append(event)
            if len(self._events) > self._max_events:
                self._events.pop(0)
                self._dropped += 1
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber(event)

    def subscribe(self, subscriber: Callable[[DomainEvent], None]) -> None:
        with self._mutex:
            self._subscribers.append(subscriber)

    def get_events(
        self,
        event_type: Optional[EventType] = None,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None
    ) -> List[DomainEvent]:
        with self._mutex:
            events = list(self._events)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if entity_id is not None:
            events = [e for e in events if e.entity_id == entity_id]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        return events

    def counts(self) -> Dict[str, int]:
        result: Dict[str, int] = {}
        with self._mutex:
            for event in self._events:
                result[event.event_type.value] = result.get(event.event_type.value, 0) + 1
        return result

    @property
    def event_count(self) -> int:
        return len(self._events)

    @property
    def dropped_count(self) -> int:
        return self._dropped


__all__ = ['ObservabilityConfig', 'configure_logging', 'EventCollector', 'PACKAGE_LOGGER']
