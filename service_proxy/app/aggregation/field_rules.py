"""
Declarative field extraction for heterogeneous upstream records.

Upstream resources name the same concept differently (``gamePassId`` vs
``id``, ``price`` vs ``priceInRobux``) and some nest it. Each canonical field
gets an ordered tuple of source paths; the first path whose value converts
cleanly wins. Dotted paths descend into nested objects.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .models import CanonicalItem, ItemType


_MISSING = object()


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted ``path`` inside ``record``; ``_MISSING`` when absent."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def as_identifier(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def as_price(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price) or price < 0:
        return None
    return price


def as_text(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return as_identifier(value)
    if isinstance(value, str):
        return value
    return None


@dataclass(frozen=True)
class FieldRule:
    """Ordered source paths for one canonical field."""

    target: str
    sources: Tuple[str, ...]
    convert: Callable[[Any], Any] = as_text

    def apply(self, record: Mapping[str, Any]) -> Any:
        for source in self.sources:
            raw = lookup(record, source)
            if raw is _MISSING:
                continue
            value = self.convert(raw)
            if value is not None:
                return value
        return None


@dataclass(frozen=True)
class ExtractionPolicy:
    """Rule table turning one upstream record type into ``CanonicalItem``."""

    name: str
    item_type: ItemType
    rules: Tuple[FieldRule, ...]

    def extract_fields(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return {rule.target: rule.apply(record) for rule in self.rules}

    def to_item(
        self,
        record: Any,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> Optional[CanonicalItem]:
        """Build an item, or ``None`` when the record carries no usable id."""
        if not isinstance(record, Mapping):
            return None
        values = dict(defaults or {})
        values.update({key: value for key, value in self.extract_fields(record).items() if value is not None})

        item_id = values.get("item_id")
        if not item_id:
            return None
        return CanonicalItem(
            item_id=item_id,
            item_name=values.get("item_name") or "",
            item_price=values.get("item_price") or 0.0,
            item_type=self.item_type,
            creator_id=values.get("creator_id") or "",
            item_image_ref=values.get("item_image_ref") or "",
        )


GAME_PASS_POLICY = ExtractionPolicy(
    name="game_pass",
    item_type=ItemType.GAMEPASS,
    rules=(
        FieldRule("item_id", ("gamePassId", "id", "passId"), as_identifier),
        FieldRule("item_name", ("displayName", "name")),
        FieldRule(
            "item_price",
            ("priceInRobux", "price", "priceInformation.defaultPriceInRobux", "product.priceInRobux"),
            as_price,
        ),
        FieldRule("creator_id", ("creatorId", "creator.id", "creator.creatorId"), as_identifier),
        FieldRule(
            "item_image_ref",
            ("iconAssetId", "iconImageAssetId", "displayIconImageAssetId", "iconImageId", "imageUrl"),
        ),
    ),
)

COLLECTIBLE_POLICY = ExtractionPolicy(
    name="collectible",
    item_type=ItemType.ASSET,
    rules=(
        FieldRule("item_id", ("assetId", "id"), as_identifier),
        FieldRule("item_name", ("name", "assetName")),
        FieldRule("item_price", ("recentAveragePrice", "price", "lowestPrice"), as_price),
        FieldRule("creator_id", ("creatorId", "creator.id", "creatorTargetId"), as_identifier),
        FieldRule("item_image_ref", ("imageUrl", "thumbnailUrl", "assetId")),
    ),
)

# A worn entry is either a bare id or an object naming one.
WORN_ASSET_ID_RULE = FieldRule("item_id", ("assetId", "id"), as_identifier)

UNIVERSE_ID_RULE = FieldRule("universe_id", ("universeId", "universe.id", "id"), as_identifier)


def worn_asset_id(entry: Any) -> Optional[str]:
    if isinstance(entry, Mapping):
        return WORN_ASSET_ID_RULE.apply(entry)
    return as_identifier(entry)
