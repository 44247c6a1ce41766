"""
Change events: one per mutation of a stored entity.

The entity family travels as an explicit tag (``EntityType``) set at the store
boundary when the change record is written, so routing never has to guess from
identifiers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class EntityType(str, Enum):
    RIDE = "ride"
    BOOKING = "booking"
    RATING = "rating"
    USER = "user"
    VEHICLE = "vehicle"
    NOTIFICATION = "notification"


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    entity_type: EntityType
    kind: ChangeKind
    before: Optional[dict[str, Any]]
    after: Optional[dict[str, Any]]
    record_id: Optional[int] = None

    @property
    def entity_id(self) -> Optional[int]:
        image = self.after or self.before or {}
        return image.get("id")

    def field_changed(self, name: str) -> bool:
        before = self.before or {}
        after = self.after or {}
        return before.get(name) != after.get(name)
