"""
Collection run orchestration.

One run resolves configuration, decides whether collection can be skipped,
collects every requested module through a per-run QueryEngine, aggregates
the results into one payload, caches it and transmits it.

States:
    IDLE -> RESOLVING_CONFIG -> CHECKING_CACHE -> {SKIPPED | COLLECTING}
    COLLECTING -> AGGREGATING -> CACHING -> TRANSMITTING -> DONE
    ERROR is reachable from any state.
"""

import logging
import platform
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..api import TransmissionClient
from ..config import ConfigurationManager
from ..config.defaults import client_version
from ..models.config import ConfigurationSnapshot
from ..models.payload import JSONObject, ensure_json_object
from ..models.results import CollectionState, RunOutcome, TransmissionOutcome
from ..osquery import QueryEngine
from ..storage import CacheStore
from ..system.identity import derive_device_id, get_host_facts, get_serial_number
from ..validation import (
    CacheIOError,
    ErrorSeverity,
    FatalConfigurationError,
    ValidationError,
    handle_error,
    validate_module_list,
)
from .catalog import ModuleRegistry

logger = logging.getLogger(__name__)

NO_CACHED_DATA_MESSAGE = "No cached data available for transmission"

# Top-level payload keys a module result may not replace.
RESERVED_PAYLOAD_KEYS = frozenset({"metadata", "events", "modules"})


@dataclass
class RunOptions:
    """
    Per-invocation options.

    Attributes:
        force: Collect even if the last collection is within the interval
        collect_only: Stop after caching, do not transmit
        transmit_only: Send the cached payload without collecting
        modules: Modules to run instead of the configured list
        device_id: Device id runtime override
        api_url: API URL runtime override
    """

    force: bool = False
    collect_only: bool = False
    transmit_only: bool = False
    modules: Optional[Sequence[str]] = None
    device_id: Optional[str] = None
    api_url: Optional[str] = None

    def __post_init__(self):
        if self.collect_only and self.transmit_only:
            raise ValidationError("collect-only and transmit-only cannot be combined")
        if self.modules is not None:
            self.modules = validate_module_list(self.modules, field_name="modules")


class CollectionOrchestrator:
    """Runs the collect, cache and transmit pipeline."""

    def __init__(
        self,
        config_manager: ConfigurationManager,
        cache: Optional[CacheStore] = None,
        registry: Optional[ModuleRegistry] = None,
        engine_factory: Optional[Callable[[ConfigurationSnapshot], QueryEngine]] = None,
        client_factory: Optional[Callable[[ConfigurationSnapshot], TransmissionClient]] = None,
        serial_provider: Callable[[], str] = get_serial_number,
        host_facts_provider: Callable[[], Dict[str, str]] = get_host_facts,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config_manager: Source of the configuration snapshot and runtime overrides
            cache: Cache store, defaults to the standard cache directory
            registry: Module processors, defaults to the built-in catalogs
            engine_factory: Builds the per-run QueryEngine
            client_factory: Builds the TransmissionClient
            serial_provider: Returns the hardware serial number
            host_facts_provider: Returns device name, OS and hardware facts
            clock: Wall clock used for collection timestamps
        """
        self.config_manager = config_manager
        self.cache = cache or CacheStore(clock=clock)
        self.registry = registry or ModuleRegistry.with_defaults()
        self.engine_factory = engine_factory or QueryEngine
        self.client_factory = client_factory or TransmissionClient
        self.serial_provider = serial_provider
        self.host_facts_provider = host_facts_provider
        self.clock = clock
        self.state = CollectionState.IDLE
        self.state_history: List[CollectionState] = [CollectionState.IDLE]

    def _transition(self, state: CollectionState) -> None:
        logger.debug(f"Collection state: {self.state.value} -> {state.value}")
        self.state = state
        self.state_history.append(state)

    def _fail(self, message: str, **fields: Any) -> RunOutcome:
        self._transition(CollectionState.ERROR)
        logger.error(message)
        return RunOutcome(state=CollectionState.ERROR, success=False, message=message, **fields)

    def run(self, options: Optional[RunOptions] = None) -> RunOutcome:
        """
        Execute one run.

        Returns:
            RunOutcome describing the final state

        Raises:
            FatalConfigurationError: If transmission is required but no API URL
                is configured. Raised before any collection.
        """
        options = options or RunOptions()
        self.state = CollectionState.IDLE
        self.state_history = [CollectionState.IDLE]

        self._transition(CollectionState.RESOLVING_CONFIG)
        snapshot = self._resolve_snapshot(options)
        if not options.collect_only and not snapshot.api_url:
            self._transition(CollectionState.ERROR)
            raise FatalConfigurationError(
                "API URL not configured. Set ApiUrl in the configuration profile, "
                "REPORTMATE_API_URL, or pass --api-url."
            )

        if options.transmit_only:
            return self._transmit_cached(snapshot)

        self._transition(CollectionState.CHECKING_CACHE)
        if not options.collect_only and self.cache.should_skip(snapshot, force=options.force):
            self._transition(CollectionState.SKIPPED)
            return RunOutcome(
                state=CollectionState.SKIPPED,
                success=True,
                message="Skipped: last collection is within the collection interval",
                skipped=True,
                cached=True,
            )

        self._transition(CollectionState.COLLECTING)
        collected_at = self.clock()
        module_ids = list(options.modules) if options.modules else list(snapshot.enabled_modules)
        results, failed = self._collect_modules(snapshot, module_ids)
        if not results:
            return self._fail("No module data collected", failed_modules=failed)

        self._transition(CollectionState.AGGREGATING)
        payload = self.build_payload(snapshot, results, module_ids, collected_at)

        self._transition(CollectionState.CACHING)
        cached = self._persist(payload)

        summary = dict(
            module_count=len(results),
            cached=cached,
            collected_modules=list(results),
            failed_modules=failed,
        )
        if options.collect_only:
            self._transition(CollectionState.DONE)
            where = "cached" if cached else "not cached"
            return RunOutcome(
                state=CollectionState.DONE,
                success=True,
                message=f"Collected {len(results)} modules ({where}, not transmitted)",
                **summary,
            )

        self._transition(CollectionState.TRANSMITTING)
        outcome = self._send(snapshot, payload)
        if not outcome.ok:
            note = "; data remains cached for --transmit-only" if cached else ""
            return self._fail(f"Transmission failed: {outcome.detail}{note}", transmission=outcome, **summary)

        try:
            self.cache.record_collection_time(collected_at)
        except CacheIOError as e:
            handle_error(e, "recording collection time", severity=ErrorSeverity.WARNING,
                         reraise=False, logger=logger)
        self._transition(CollectionState.DONE)
        return RunOutcome(
            state=CollectionState.DONE,
            success=True,
            message=f"Transmitted {len(results)} modules, {outcome.records_processed} records processed",
            record_count=outcome.records_processed,
            transmission=outcome,
            **summary,
        )

    def _resolve_snapshot(self, options: RunOptions) -> ConfigurationSnapshot:
        if options.device_id:
            self.config_manager.set_override("DeviceId", options.device_id)
        if options.api_url:
            self.config_manager.set_override("ApiUrl", options.api_url)
        return self.config_manager.snapshot

    def _transmit_cached(self, snapshot: ConfigurationSnapshot) -> RunOutcome:
        payload = self.cache.load_payload()
        if payload is None:
            return self._fail(NO_CACHED_DATA_MESSAGE)

        modules = payload.get("modules")
        module_count = len(modules) if isinstance(modules, dict) else 0
        logger.info(f"Loaded cached payload with {module_count} modules")

        self._transition(CollectionState.TRANSMITTING)
        outcome = self._send(snapshot, payload)
        if not outcome.ok:
            return self._fail(f"Transmission failed: {outcome.detail}", module_count=module_count,
                              cached=True, transmission=outcome)
        self._transition(CollectionState.DONE)
        return RunOutcome(
            state=CollectionState.DONE,
            success=True,
            message=f"Transmitted cached payload, {outcome.records_processed} records processed",
            module_count=module_count,
            record_count=outcome.records_processed,
            cached=True,
            transmission=outcome,
        )

    def _collect_modules(self, snapshot: ConfigurationSnapshot,
                         module_ids: Sequence[str]) -> Tuple[Dict[str, JSONObject], List[str]]:
        results: Dict[str, JSONObject] = {}
        failed: List[str] = []
        self.cache.prune_older_than()

        with self.engine_factory(snapshot) as engine:
            for index, module_id in enumerate(module_ids, start=1):
                processor = self.registry.get(module_id)
                if processor is None:
                    logger.warning(f"Unknown module '{module_id}', skipping")
                    failed.append(module_id)
                    continue

                logger.info(f"Collecting module {index}/{len(module_ids)}: {module_id}")
                try:
                    data = ensure_json_object(processor.collect(snapshot, engine))
                except Exception as e:
                    handle_error(e, f"collecting module '{module_id}'", severity=ErrorSeverity.WARNING,
                                 reraise=False, logger=logger)
                    failed.append(module_id)
                    continue

                results[module_id] = data
                try:
                    self.cache.persist_module_payload(module_id, data)
                except CacheIOError as e:
                    logger.warning(f"Could not cache module '{module_id}': {e}")
        return results, failed

    def resolve_device_identity(self, snapshot: ConfigurationSnapshot) -> Tuple[str, str]:
        """Return (device id, serial number); the id is derived from the serial when not configured."""
        serial = self.serial_provider()
        device_id = snapshot.device_id or derive_device_id(serial)
        return device_id, serial

    def build_payload(self, snapshot: ConfigurationSnapshot, results: Dict[str, JSONObject],
                      module_ids: Sequence[str], collected_at: float) -> JSONObject:
        """
        Aggregate module results into the transmitted payload.

        Each module appears under ``modules`` and again at the top level
        under its own name, unless the name is a reserved payload key.
        """
        device_id, serial = self.resolve_device_identity(snapshot)
        full_run = list(module_ids) == list(snapshot.enabled_modules)
        payload: Dict[str, Any] = {
            "metadata": {
                "deviceId": device_id,
                "serialNumber": serial,
                "collectedAt": datetime.fromtimestamp(collected_at, timezone.utc).isoformat(),
                "clientVersion": client_version(),
                "platform": "macOS" if platform.system() == "Darwin" else platform.system(),
                "collectionType": "Full" if full_run else "Partial",
                "enabledModules": list(module_ids),
                "additional": dict(self.host_facts_provider()),
            },
            "events": [],
            "modules": dict(results),
        }
        for module_id, data in results.items():
            if module_id in RESERVED_PAYLOAD_KEYS:
                logger.warning(f"Module '{module_id}' only stored under 'modules': name is reserved")
                continue
            payload[module_id] = data
        return ensure_json_object(payload)

    def _persist(self, payload: JSONObject) -> bool:
        try:
            path = self.cache.persist_payload(payload)
        except CacheIOError as e:
            handle_error(e, "caching collected payload", severity=ErrorSeverity.WARNING,
                         reraise=False, logger=logger)
            return False
        logger.info(f"Cached collected payload at {path}")
        return True

    def _send(self, snapshot: ConfigurationSnapshot, payload: JSONObject) -> TransmissionOutcome:
        client = self.client_factory(snapshot)
        try:
            return client.send(payload)
        finally:
            client.close()
