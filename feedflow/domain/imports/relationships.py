"""
Holding area for rows that reference a product by its external id.

Market data rows in a combined import point at a product that may be created
by the same chunk. They wait here, keyed by the product's external id, until
the product batch is persisted and its database ids are known.
"""
import logging
from collections import defaultdict
from typing import AbstractSet, Dict, List, Optional, Tuple

from feedflow.domain.imports.mapper import MappedRecord

logger = logging.getLogger(__name__)

PRODUCT_REF_COLUMN = "product_ref"


class RelationshipHolder:
    def __init__(self, key_field: str = "productId"):
        self.key_field = key_field
        self._held: List[Tuple[Optional[str], MappedRecord]] = []
        self._by_key: Dict[str, List[MappedRecord]] = defaultdict(list)

    def __len__(self) -> int:
        return len(self._held)

    def hold(self, record: MappedRecord, key: Optional[str] = None) -> None:
        if key is None:
            raw_key = record.values.get(self.key_field)
            key = str(raw_key).strip() if raw_key is not None else None
        key = key or None
        self._held.append((key, record))
        if key is not None:
            self._by_key[key].append(record)

    def pending_for(self, key: str) -> List[MappedRecord]:
        return list(self._by_key.get(key, []))

    def release(
        self,
        key_ids: Dict[str, int],
        exclude_keys: AbstractSet[str] = frozenset(),
    ) -> Tuple[List[MappedRecord], int]:
        """
        Attach database ids to held records and hand them back in arrival order.

        Records whose product key is in ``exclude_keys`` are dropped; records
        whose product could not be resolved are released unlinked.

        Returns:
            Tuple of (released_records, excluded_count).
        """
        released: List[MappedRecord] = []
        unresolved = 0
        excluded = 0
        for key, record in self._held:
            if key is not None and key in exclude_keys:
                excluded += 1
                continue
            product_ref = key_ids.get(key) if key is not None else None
            if product_ref is None:
                unresolved += 1
            record.links[PRODUCT_REF_COLUMN] = product_ref
            released.append(record)

        if unresolved:
            logger.debug("Released %d related rows without a product reference", unresolved)
        if excluded:
            logger.debug("Dropped %d related rows of skipped products", excluded)
        self._held.clear()
        self._by_key.clear()
        return released, excluded
