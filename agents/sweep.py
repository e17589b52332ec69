"""Shared machinery for the periodic scanners.

A sweep loads its candidate documents, parses each into a record, asks
whether the record is due for a transition and, if so, applies it. Problems
with one record never stop the sweep: malformed documents are skipped with a
warning and any other failure is logged and counted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Generic, Iterable, Optional, TypeVar

from connector import Document, DocumentStore
from notifications.errors import MalformedRecordError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepResult:
    """Counters describing one sweep run."""

    name: str
    ran_at: datetime
    examined: int = 0
    changed: int = 0
    transitions: int = 0
    skipped: int = 0
    failed: int = 0

    def to_summary(self) -> Dict[str, Any]:
        return {
            "sweep": self.name,
            "ran_at": self.ran_at.isoformat(),
            "examined": self.examined,
            "changed": self.changed,
            "transitions": self.transitions,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class Sweep(Generic[RecordT]):
    """Base class for a scan over one kind of stored record."""

    name = "sweep"

    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Optional[Clock] = None,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._store = store
        self._clock = clock or utc_now
        self._tz = tz

    def load(self) -> Iterable[Document]:
        raise NotImplementedError

    def parse(self, document: Document) -> RecordT:
        raise NotImplementedError

    def is_due(self, record: RecordT, now: datetime) -> bool:
        raise NotImplementedError

    def apply(self, record: RecordT, now: datetime) -> int:
        """Perform the transition and return how many state changes it made."""

        raise NotImplementedError

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self._clock()
        result = SweepResult(name=self.name, ran_at=now)

        for document in self.load():
            result.examined += 1
            try:
                record = self.parse(document)
                if not self.is_due(record, now):
                    continue
                result.transitions += self.apply(record, now)
            except MalformedRecordError as exc:
                logger.warning("%s: skipping %s (%s)", self.name, document.path, exc.reason)
                result.skipped += 1
                continue
            except Exception:  # noqa: BLE001 - one bad record must not halt the sweep
                logger.exception("%s: failed to process %s", self.name, document.path)
                result.failed += 1
                continue
            result.changed += 1

        logger.info(
            "%s: examined=%d changed=%d skipped=%d failed=%d",
            self.name,
            result.examined,
            result.changed,
            result.skipped,
            result.failed,
        )
        return result
