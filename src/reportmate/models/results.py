"""
Transmission and run outcome models.

These are plain values returned across component boundaries instead of
exceptions: the transmission client always returns a TransmissionOutcome and
the orchestrator always returns a RunOutcome, and the CLI decides what to
print and which exit code to use.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from ..validation import TransmissionError


class TransmissionErrorKind(Enum):
    """Failure classes of a transmission attempt."""

    CONFIGURATION = "configuration"
    ENCODING = "encoding"
    NETWORK = "network"
    HTTP = "http"


@dataclass(frozen=True)
class TransmissionSuccess:
    """
    The backend answered 2xx.

    ``server_success`` is False when the body carried a negative success
    flag or status. The payload still counts as delivered.
    """

    records_processed: int
    message: Optional[str] = None
    status_code: int = 200
    server_success: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    ok = True


@dataclass(frozen=True)
class TransmissionFailure:
    """
    The payload was not accepted.

    Attributes:
        kind: Failure class
        detail: Human-readable description
        status_code: HTTP status for HTTP failures
        body: Raw response body, when a response was received
        error: Underlying transport or encoding exception
    """

    kind: TransmissionErrorKind
    detail: str
    status_code: Optional[int] = None
    body: Optional[str] = None
    error: Optional[BaseException] = None

    ok = False

    def to_error(self) -> TransmissionError:
        return TransmissionError(f"{self.kind.value}: {self.detail}", outcome=self)


TransmissionOutcome = Union[TransmissionSuccess, TransmissionFailure]


class CollectionState(Enum):
    """States of one orchestrated run."""

    IDLE = "idle"
    RESOLVING_CONFIG = "resolving_config"
    CHECKING_CACHE = "checking_cache"
    SKIPPED = "skipped"
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    CACHING = "caching"
    TRANSMITTING = "transmitting"
    DONE = "done"
    ERROR = "error"


@dataclass
class RunOutcome:
    """
    Final result of one orchestrated run.

    ``success`` is True for completed, skipped and collect-only runs.
    """

    state: CollectionState
    success: bool
    message: str
    module_count: int = 0
    record_count: int = 0
    cached: bool = False
    skipped: bool = False
    collected_modules: List[str] = field(default_factory=list)
    failed_modules: List[str] = field(default_factory=list)
    transmission: Optional[TransmissionOutcome] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1
