"""
On-disk cache of collection results.

Layout under the cache directory:
    last_collection.timestamp   epoch seconds of the last transmitted collection
    collected_data.json         the full aggregated payload
    <module>_cache.json         one payload per module

Every write goes to a temporary file in the same directory and is renamed
into place, so a concurrent transmit-only run never reads a partial file.
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from ..models.config import ConfigurationSnapshot
from ..models.payload import JSONObject, ensure_json_object
from ..validation import CacheIOError, ErrorSeverity, ValidationError, handle_file_error, validate_identifier

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path("/Library/Managed Reports/cache")
TIMESTAMP_FILENAME = "last_collection.timestamp"
PAYLOAD_FILENAME = "collected_data.json"
MODULE_FILENAME_SUFFIX = "_cache.json"
DEFAULT_RETENTION_SECONDS = 86400


class CacheStore:
    """
    Collection timestamp and payload cache.

    Write failures raise CacheIOError; read failures are logged and reported
    as a missing value.
    """

    def __init__(self, cache_dir: Union[str, Path, None] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            cache_dir: Cache directory, created on first write
            clock: Wall clock used for both recording and skip decisions
        """
        self.cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR
        self._clock = clock

    @property
    def timestamp_file(self) -> Path:
        return self.cache_dir / TIMESTAMP_FILENAME

    @property
    def payload_file(self) -> Path:
        return self.cache_dir / PAYLOAD_FILENAME

    def module_file(self, module_id: str) -> Path:
        """
        Raises:
            ValidationError: If the module id is not a safe file name component
        """
        return self.cache_dir / f"{validate_identifier(module_id, field_name='module_id')}{MODULE_FILENAME_SUFFIX}"

    def last_collection_time(self) -> Optional[float]:
        """Epoch seconds of the last recorded collection, or None."""
        text = self._read_text(self.timestamp_file, "collection timestamp")
        if text is None:
            return None
        try:
            return float(text.strip())
        except ValueError:
            logger.warning(f"Ignoring malformed collection timestamp in {self.timestamp_file}: {text.strip()!r}")
            return None

    def record_collection_time(self, timestamp: Optional[float] = None) -> float:
        """
        Record a collection time.

        An older time never replaces a newer recorded one.

        Returns:
            The time now on record

        Raises:
            CacheIOError: If the timestamp cannot be written
        """
        timestamp = self._clock() if timestamp is None else float(timestamp)
        previous = self.last_collection_time()
        if previous is not None and previous > timestamp:
            logger.debug(f"Keeping newer collection timestamp {previous} over {timestamp}")
            return previous
        self._write_atomic(self.timestamp_file, repr(timestamp))
        return timestamp

    def should_skip(self, snapshot: ConfigurationSnapshot, force: bool = False,
                    now: Optional[float] = None) -> bool:
        """
        Decide whether this run can skip collection.

        True only when a prior collection exists, it is younger than the
        configured interval and the run is not forced.
        """
        if force:
            return False
        last = self.last_collection_time()
        if last is None:
            return False
        now = self._clock() if now is None else now
        elapsed = now - last
        if elapsed < snapshot.collection_interval:
            logger.info(
                f"Last collection was {int(elapsed)}s ago, "
                f"interval is {snapshot.collection_interval}s; skipping collection"
            )
            return True
        return False

    def persist_payload(self, payload: JSONObject) -> Path:
        """
        Cache the full aggregated payload.

        Raises:
            CacheIOError: If the payload cannot be encoded or written
        """
        self._write_json(self.payload_file, payload)
        return self.payload_file

    def load_payload(self) -> Optional[Dict[str, Any]]:
        return self._read_json(self.payload_file, "cached payload")

    def persist_module_payload(self, module_id: str, payload: JSONObject) -> Path:
        """
        Cache one module's result.

        Raises:
            CacheIOError: If the payload cannot be encoded or written, or the
                module id cannot be used as a file name
        """
        try:
            path = self.module_file(module_id)
        except ValidationError as e:
            raise CacheIOError(f"Cannot cache module {module_id!r}: {e}") from e
        self._write_json(path, payload)
        return path

    def load_module_payload(self, module_id: str) -> Optional[Dict[str, Any]]:
        try:
            path = self.module_file(module_id)
        except ValidationError as e:
            logger.warning(f"Cannot load cached module {module_id!r}: {e}")
            return None
        return self._read_json(path, f"cached {module_id} payload")

    def prune_older_than(self, ttl: float = DEFAULT_RETENTION_SECONDS) -> int:
        """
        Remove cache files last modified more than ``ttl`` seconds ago.

        The collection timestamp is kept. Failures are logged and skipped.

        Returns:
            Number of files removed
        """
        if not self.cache_dir.is_dir():
            return 0
        cutoff = self._clock() - ttl
        removed = 0
        try:
            entries = list(self.cache_dir.iterdir())
        except OSError as e:
            logger.warning(f"Cannot list cache directory {self.cache_dir}: {e}")
            return 0

        for entry in entries:
            if entry.name == TIMESTAMP_FILENAME:
                continue
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
                    logger.debug(f"Removed old cache file: {entry.name}")
            except OSError as e:
                logger.warning(f"Could not remove old cache file {entry}: {e}")
        if removed:
            logger.info(f"Pruned {removed} cache files older than {int(ttl)}s")
        return removed

    def _write_json(self, path: Path, payload: JSONObject) -> None:
        try:
            data = json.dumps(ensure_json_object(payload), indent=2, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise CacheIOError(f"Cannot encode {path.name}: {e}", path=str(path)) from e
        self._write_atomic(path, data)

    def _write_atomic(self, path: Path, text: str) -> None:
        tmp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            logger.debug(f"Wrote cache file {path}")
        except OSError as e:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise CacheIOError(f"Cannot write {path}: {e}", path=str(path)) from e

    def _read_text(self, path: Path, description: str) -> Optional[str]:
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            handle_file_error(e, f"reading {description}", severity=ErrorSeverity.WARNING,
                              reraise=False, logger=logger)
            return None

    def _read_json(self, path: Path, description: str) -> Optional[Dict[str, Any]]:
        text = self._read_text(path, description)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except ValueError as e:
            logger.warning(f"Could not decode {description} from {path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {description} in {path}: expected an object")
            return None
        return data
