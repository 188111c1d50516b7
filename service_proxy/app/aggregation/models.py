"""
Canonical item model and merge policy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, List, Union

from shared.errors import PartialAggregationFailure


class ItemType(str, Enum):
    """Kind of purchasable item."""

    GAMEPASS = "Gamepass"
    ASSET = "Asset"


class SourcePriority(IntEnum):
    """Confidence of the source an item came from."""

    PLACEHOLDER = 0
    DETAILED = 1


@dataclass(frozen=True)
class CanonicalItem:
    """One item in the proxy's unified output shape."""

    item_id: str
    item_name: str = ""
    item_price: float = 0.0
    item_type: ItemType = ItemType.ASSET
    creator_id: str = ""
    item_image_ref: str = ""

    def __post_init__(self):
        if not self.item_id:
            raise ValueError("item_id must be non-empty")
        if self.item_price < 0:
            raise ValueError("item_price must be non-negative")

    @classmethod
    def placeholder(cls, item_id: str, item_type: ItemType = ItemType.ASSET) -> "CanonicalItem":
        """Minimal record for an id known only from a bare id listing."""
        return cls(item_id=item_id, item_type=item_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "itemName": self.item_name,
            "itemPrice": _json_number(self.item_price),
            "itemType": self.item_type.value,
            "creatorId": self.creator_id,
            "itemImageRef": self.item_image_ref,
        }


def _json_number(value: float) -> Union[int, float]:
    """Integral prices go out as ints, the way the upstream sends them."""
    return int(value) if float(value).is_integer() else value


class ItemMerger:
    """Deduplicates items by id.

    A detailed record replaces whatever is stored for its id; a placeholder is
    only stored when the id is not present yet. The merged map therefore does
    not depend on the order sources are merged in.
    """

    def __init__(self):
        self._items: Dict[str, CanonicalItem] = {}
        self._priorities: Dict[str, SourcePriority] = {}

    def add(self, item: CanonicalItem, priority: SourcePriority) -> bool:
        current = self._priorities.get(item.item_id)
        if current is not None and current > priority:
            return False
        if current is not None and priority is SourcePriority.PLACEHOLDER:
            return False
        self._items[item.item_id] = item
        self._priorities[item.item_id] = priority
        return True

    def add_all(self, items: Iterable[CanonicalItem], priority: SourcePriority) -> None:
        for item in items:
            self.add(item, priority)

    def items(self) -> Dict[str, CanonicalItem]:
        return dict(self._items)


@dataclass
class AggregateResult:
    """Merged items for one subject plus the sub-collections that fell short."""

    items: Dict[str, CanonicalItem] = field(default_factory=dict)
    failures: List[PartialAggregationFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {"items": {item_id: item.to_dict() for item_id, item in self.items.items()}}
