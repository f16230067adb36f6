"""In-memory registry of lamps seen on the xAAL bus.

Liveness is evaluated lazily: nothing sweeps the registry in the
background, every walk drops the records whose deadline has passed before
reporting or targeting anything.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

# Deadline value for lamps whose liveness window is unknown.
NEVER_EXPIRES: float | None = None


class LampNotFound(LookupError):
    """Raised when a selection index does not match any live lamp."""

    def __init__(self, index: int, count: int) -> None:
        super().__init__(f"No lamp at index {index} ({count} lamp(s) known)")
        self.index = index
        self.count = count


@dataclasses.dataclass
class LampRecord:
    """A single tracked lamp, owned by the registry."""

    address: str
    dev_type: str
    selected: bool = False
    expires_at: float | None = NEVER_EXPIRES

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclasses.dataclass(frozen=True)
class LampSnapshot:
    """Read-only copy of a lamp record handed out to callers."""

    address: str
    dev_type: str
    selected: bool
    expires_at: float | None

    @property
    def is_immortal(self) -> bool:
        return self.expires_at is None

    @classmethod
    def of(cls, record: LampRecord) -> "LampSnapshot":
        return cls(
            address=record.address,
            dev_type=record.dev_type,
            selected=record.selected,
            expires_at=record.expires_at,
        )


class LampRegistry:
    """Lamps keyed by address, kept in first-sighting order.

    The order is the one shown in the operator menu, so index ``0`` is the
    oldest live lamp.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._records: dict[str, LampRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, address: object) -> bool:
        return address in self._records

    def upsert(self, address: str, dev_type: str, expires_at: float | None) -> None:
        """Record a sighting of *address*.

        Existing records get their deadline overwritten and keep their
        selection. Unknown addresses are appended unselected.
        """
        record = self._records.get(address)
        if record is None:
            self._records[address] = LampRecord(
                address=address, dev_type=dev_type, expires_at=expires_at
            )
            logger.info("New lamp %s (%s)", address, dev_type)
            return

        if record.dev_type != dev_type:
            logger.warning(
                "Lamp %s changed type from %s to %s",
                address,
                record.dev_type,
                dev_type,
            )
            record.dev_type = dev_type
        record.expires_at = expires_at

    def prune_expired(self) -> None:
        """Drop every lamp whose deadline is strictly in the past."""
        self._walk()

    def iter_lamps(self) -> Iterator[LampSnapshot]:
        """Yield snapshots of the live lamps, pruning first."""
        for record in self._walk():
            yield LampSnapshot.of(record)

    def toggle_selected_by_index(self, index: int) -> LampSnapshot:
        """Flip the selection of the lamp at *index* in ``iter_lamps`` order.

        Raises:
            LampNotFound: *index* is outside the post-prune range.
        """
        live = self._walk()
        if index < 0 or index >= len(live):
            raise LampNotFound(index, len(live))
        record = live[index]
        record.selected = not record.selected
        logger.debug(
            "Lamp %s %s", record.address, "selected" if record.selected else "deselected"
        )
        return LampSnapshot.of(record)

    def selected_targets(self) -> list[str]:
        """Prune and collect the addresses of selected lamps in one walk."""
        return [record.address for record in self._walk() if record.selected]

    def _walk(self) -> list[LampRecord]:
        now = self._clock()
        live: list[LampRecord] = []
        expired: list[str] = []
        for address, record in self._records.items():
            if record.is_expired(now):
                expired.append(address)
            else:
                live.append(record)

        for address in expired:
            del self._records[address]
            logger.info("Lamp %s expired, removing it", address)

        return live
