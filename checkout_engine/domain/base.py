"""Building blocks shared by the checkout domain model."""

from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, TypeVar


@dataclass(frozen=True)
class ValueObject(ABC):
    """Immutable value, equal to any other with the same attributes."""


IdT = TypeVar("IdT")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class AggregateRoot(ABC, Generic[IdT]):
    """Mutable root of a checkout's data, identified by ``id``.

    Two roots with the same ID are the same root whatever their other
    fields hold. Mutators call ``_touch`` so ``updated_at`` records the
    last change.
    """

    id: IdT
    updated_at: datetime = field(default_factory=_now, kw_only=True)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, self.__class__) and self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def _touch(self) -> None:
        self.updated_at = _now()
