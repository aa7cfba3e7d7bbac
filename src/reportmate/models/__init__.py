"""
Data models and structures for the agent.

Configuration Models:
- The immutable configuration snapshot and its source precedence

Query Models:
- Per-query results, execution tiers and extension session states

Result Models:
- Transmission outcomes and orchestrated run outcomes

Payload Models:
- JSON value typing and validation for collected data
"""

from .config import DEFAULT_ENABLED_MODULES, ConfigSource, ConfigurationSnapshot
from .payload import JSONObject, JSONValue, ensure_json_object, ensure_json_value
from .query import ExtensionState, QueryResult, QueryTier, Record
from .results import (
    CollectionState,
    RunOutcome,
    TransmissionErrorKind,
    TransmissionFailure,
    TransmissionOutcome,
    TransmissionSuccess,
)

__all__ = [
    # Configuration
    "DEFAULT_ENABLED_MODULES",
    "ConfigSource",
    "ConfigurationSnapshot",
    # Payload
    "JSONObject",
    "JSONValue",
    "ensure_json_object",
    "ensure_json_value",
    # Query
    "ExtensionState",
    "QueryResult",
    "QueryTier",
    "Record",
    # Results
    "CollectionState",
    "RunOutcome",
    "TransmissionErrorKind",
    "TransmissionFailure",
    "TransmissionOutcome",
    "TransmissionSuccess",
]
