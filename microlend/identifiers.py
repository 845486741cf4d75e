"""
Identifier Generation Module

Human-readable sequential identifiers (CUST00001, LOAN000001, RCP0000001,
STAFF0001). Numbers come from an atomic per-entity counter in storage that is
seeded from the highest number already issued, so identifiers are never reused
after deletions and never duplicated by concurrent creations.
"""

import re
import threading
from enum import Enum
from typing import Iterable, Optional, Set

from .storage import StorageInterface


class EntityType(Enum):
    """Entity collections that carry a generated identifier"""
    CUSTOMER = ("CUST", 5, "customers", "customer_id")
    LOAN = ("LOAN", 6, "loans", "loan_id")
    REPAYMENT = ("RCP", 7, "repayments", "receipt_id")
    STAFF = ("STAFF", 4, "staff", "staff_id")

    def __init__(self, prefix: str, width: int, table: str, field: str):
        self.prefix = prefix
        self.width = width
        self.table = table
        self.field = field

    @property
    def sequence_name(self) -> str:
        return f"{self.table}.{self.field}"


def next_identifier(prefix: str, current_count: int, width: int) -> str:
    """Format the identifier that follows current_count, e.g. ("LOAN", 41, 6) -> LOAN000042"""
    if current_count < 0:
        raise ValueError("current_count cannot be negative")
    return f"{prefix}{current_count + 1:0{width}d}"


def parse_sequence(identifier: Optional[str], prefix: str) -> Optional[int]:
    """Extract the sequence number of an identifier, or None if it is not one of ours"""
    if not identifier:
        return None
    match = re.fullmatch(rf"{re.escape(prefix)}(\d+)", identifier)
    if not match:
        return None
    return int(match.group(1))


def highest_issued(identifiers: Iterable[Optional[str]], prefix: str) -> int:
    """Largest sequence number among identifiers (0 if none)"""
    numbers = [parse_sequence(i, prefix) for i in identifiers]
    return max((n for n in numbers if n is not None), default=0)


class IdentifierGenerator:
    """
    Issues identifiers from an atomic counter kept in storage
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._seeded: Set[EntityType] = set()
        self._lock = threading.Lock()

    def next(self, entity_type: EntityType) -> str:
        """Issue the next identifier for an entity type"""
        with self._lock:
            if entity_type not in self._seeded:
                # First issue per generator: lift the counter past anything already stored
                records = self.storage.load_all(entity_type.table)
                floor = highest_issued((r.get(entity_type.field) for r in records), entity_type.prefix)
                value = self.storage.next_sequence(entity_type.sequence_name, floor=floor)
                self._seeded.add(entity_type)
                return next_identifier(entity_type.prefix, value - 1, entity_type.width)

        value = self.storage.next_sequence(entity_type.sequence_name)
        return next_identifier(entity_type.prefix, value - 1, entity_type.width)
