"""
Item aggregation package.
"""

from .models import AggregateResult, CanonicalItem, ItemType, SourcePriority
from .collector import CollectionResult, PageWalk, PaginatedCollector, ResourceDescriptor
from .aggregator import ItemAggregator

__all__ = [
    "AggregateResult",
    "CanonicalItem",
    "CollectionResult",
    "ItemAggregator",
    "ItemType",
    "PageWalk",
    "PaginatedCollector",
    "ResourceDescriptor",
    "SourcePriority",
]
