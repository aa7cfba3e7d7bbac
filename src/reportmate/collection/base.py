"""
Module processor interface and the query-catalog implementation.

A module processor collects one named domain of device data. It receives the
current ConfigurationSnapshot and the run's QueryEngine and returns a JSON
object; it may raise, in which case the orchestrator drops that module from
the run.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, Mapping, Optional

from ..models.config import ConfigurationSnapshot
from ..models.payload import JSONObject, JSONValue
from ..osquery import QueryEngine
from ..system.commands import ProcessRunner

logger = logging.getLogger(__name__)

SHELL_FALLBACK_TIMEOUT = 60


class ModuleProcessor(ABC):
    """Collects the data for one module."""

    module_id: str = ""

    @abstractmethod
    def collect(self, snapshot: ConfigurationSnapshot, engine: QueryEngine) -> JSONObject:
        """
        Collect this module's data.

        Args:
            snapshot: Current configuration
            engine: Query engine owned by the current run

        Returns:
            JSON object with the module's data
        """


def parse_shell_output(output: str) -> JSONValue:
    """
    Interpret fallback command output.

    A JSON object is returned as-is, a JSON array is wrapped as
    ``{"items": [...]}`` and anything else as ``{"output": text}``.
    """
    text = output.strip()
    try:
        value = json.loads(text)
    except ValueError:
        return {"output": text}
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"items": value}
    return {"output": text}


class QueryModuleProcessor(ModuleProcessor):
    """
    Module processor driven by a catalog of osquery queries.

    Each catalog key becomes a key of the module result. Keys listed in
    ``single_row`` hold the first row (or an empty object) instead of the row
    list. When a query fails and a shell fallback exists for its key, the
    fallback's output is used instead.
    """

    def __init__(
        self,
        module_id: str,
        queries: Mapping[str, str],
        fallbacks: Optional[Mapping[str, str]] = None,
        single_row: Iterable[str] = (),
        runner: Optional[ProcessRunner] = None,
    ):
        self.module_id = module_id
        self.queries = dict(queries)
        self.fallbacks = dict(fallbacks or {})
        self.single_row = frozenset(single_row)
        self._runner = runner or ProcessRunner()

    def collect(self, snapshot: ConfigurationSnapshot, engine: QueryEngine) -> JSONObject:
        results = engine.execute_batch(self.queries)
        data: Dict[str, JSONValue] = {
            "moduleId": self.module_id,
            "collectedAt": datetime.now(timezone.utc).isoformat(),
        }
        for key, result in results.items():
            if not result.ok and key in self.fallbacks:
                data[key] = self._run_fallback(key)
            elif key in self.single_row:
                data[key] = dict(result.first or {})
            else:
                data[key] = [dict(record) for record in result.records]
        return data

    def _run_fallback(self, key: str) -> JSONValue:
        logger.info(f"{self.module_id}.{key}: osquery failed, using shell fallback")
        result = self._runner.run_shell(self.fallbacks[key], timeout=SHELL_FALLBACK_TIMEOUT)
        if not result.ok:
            logger.warning(f"{self.module_id}.{key}: fallback command failed: {result.stderr.strip()}")
            return {} if key in self.single_row else []
        return parse_shell_output(result.stdout)
