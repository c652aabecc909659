"""Source-to-target identifier bookkeeping for a single import."""

from collections import defaultdict
from typing import Dict, List, Optional

from .errors import InvalidManifest
from .models import CategoryRecord

CATEGORY = "category"
ASSET = "asset"


class IdentityMap:
    """
    Maps identifiers from the bundle to identifiers in the target store, one
    table per entity kind. Entries are only ever added; a map lives for one
    import and is then thrown away.
    """

    def __init__(self):
        self._maps: Dict[str, Dict[str, str]] = defaultdict(dict)

    def remember(self, kind: str, source_id: str, target_id: str) -> None:
        self._maps[kind][source_id] = target_id

    def resolve(self, kind: str, source_id: Optional[str]) -> Optional[str]:
        if source_id is None:
            return None
        return self._maps[kind].get(source_id)

    def contains(self, kind: str, source_id: str) -> bool:
        return source_id in self._maps[kind]

    def count(self, kind: str) -> int:
        return len(self._maps[kind])


def order_categories(categories: List[CategoryRecord]) -> List[CategoryRecord]:
    """
    Orders categories so every parent found in the list comes before its
    children: roots first, then each level of the tree in turn. The input order
    is kept within a level. A parent id that is not in the list counts as a root
    here. Raises InvalidManifest if the parent links form a cycle.
    """
    by_id = {category.id: category for category in categories}
    depths: Dict[str, int] = {}

    def depth_of(category: CategoryRecord) -> int:
        seen = set()
        chain = []
        current = category
        while current is not None and current.id not in depths:
            if current.id in seen:
                raise InvalidManifest(f"Category hierarchy contains a cycle at '{current.slug}'")
            seen.add(current.id)
            chain.append(current)
            current = by_id.get(current.parent_id) if current.parent_id else None
        depth = depths[current.id] + 1 if current is not None else 0
        for item in reversed(chain):
            depths[item.id] = depth
            depth += 1
        return depths[category.id]

    return sorted(categories, key=depth_of)
