"""
Query execution data models.

A QueryResult carries the rows returned by osquery for one query, the tier
that produced them, and the error when the query failed. Failed queries
still produce a result with no rows, so batches always line up with their
input keys.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

from ..validation import QueryExecutionError

Scalar = Union[None, bool, int, float, str]
Record = Dict[str, Scalar]


class ExtensionState(Enum):
    """Lifecycle of the persistent extension session."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    READY = "ready"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


class QueryTier(Enum):
    """Execution path used for a query."""

    SIMPLE = "simple"
    EXTENSION = "extension"


@dataclass
class QueryResult:
    """
    Rows returned by a single query.

    Iterating, indexing and ``len()`` operate on the records, so a result can
    be used wherever a list of rows is expected.
    """

    key: str
    records: List[Record] = field(default_factory=list)
    tier: QueryTier = QueryTier.SIMPLE
    error: Optional[QueryExecutionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def first(self) -> Optional[Record]:
        """The first record, or None for an empty result."""
        return self.records[0] if self.records else None

    @classmethod
    def failed(cls, key: str, error: QueryExecutionError,
               tier: QueryTier = QueryTier.SIMPLE) -> "QueryResult":
        return cls(key=key, records=[], tier=tier, error=error)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> Record:
        return self.records[index]
