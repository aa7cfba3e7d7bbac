"""
Unit tests for the collection run orchestrator.

Module processors, the query engine and the transmission client are
replaced with fakes; the configuration manager and cache are real and live
in a temporary directory.
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from conftest import FakeClock, FakeProcessHandle, FakeRunner, osquery_tables, session_tables
from reportmate.collection import (
    NO_CACHED_DATA_MESSAGE,
    CollectionOrchestrator,
    ModuleProcessor,
    ModuleRegistry,
    RunOptions,
)
from reportmate.models.query import ExtensionState
from reportmate.models.results import (
    CollectionState,
    TransmissionErrorKind,
    TransmissionFailure,
    TransmissionSuccess,
)
from reportmate.osquery import QueryEngine
from reportmate.storage import CacheStore
from reportmate.system.identity import derive_device_id
from reportmate.validation import CacheIOError, FatalConfigurationError, ValidationError

NOW = 1_700_000_000.0
SERIAL = "C02TEST123"
API_URL = "https://reportmate.example.com"


class StaticProcessor(ModuleProcessor):
    def __init__(self, module_id, data=None, error=None):
        self.module_id = module_id
        self.data = data if data is not None else {"moduleId": module_id}
        self.error = error
        self.calls = 0

    def collect(self, snapshot, engine):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.data


class FakeEngine:
    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True


@pytest.fixture
def cache(temp_dir):
    return CacheStore(temp_dir / "cache", clock=lambda: NOW)


@pytest.fixture
def client():
    fake = Mock()
    fake.send.return_value = TransmissionSuccess(records_processed=3, message="ok")
    return fake


@pytest.fixture
def build(make_manager, cache, client):
    """Build an orchestrator over fakes; returns (orchestrator, engines, client snapshots)."""

    def _build(processors=None, environ=None, **manager_kwargs):
        manager = make_manager({"REPORTMATE_API_URL": API_URL} if environ is None else environ, **manager_kwargs)
        registry = ModuleRegistry(processors if processors is not None else [
            StaticProcessor("hardware", {"moduleId": "hardware", "model": "Mac14,2"}),
            StaticProcessor("network", {"moduleId": "network", "interfaces": []}),
        ])
        engines = []
        client_snapshots = []

        def engine_factory(snapshot):
            engine = FakeEngine(snapshot)
            engines.append(engine)
            return engine

        def client_factory(snapshot):
            client_snapshots.append(snapshot)
            return client

        orchestrator = CollectionOrchestrator(
            manager,
            cache=cache,
            registry=registry,
            engine_factory=engine_factory,
            client_factory=client_factory,
            serial_provider=lambda: SERIAL,
            host_facts_provider=lambda: {"deviceName": "mac-01", "osVersion": "14.5"},
            clock=lambda: NOW,
        )
        return orchestrator, engines, client_snapshots

    return _build


TWO_MODULES = RunOptions(modules=["hardware", "network"])


@pytest.mark.unit
class TestFullRun:
    """Test cases for a collect, cache and transmit run."""

    def test_success(self, build, cache, client):
        orchestrator, engines, _ = build()

        outcome = orchestrator.run(TWO_MODULES)

        assert outcome.success
        assert outcome.state is CollectionState.DONE
        assert outcome.module_count == 2
        assert outcome.record_count == 3
        assert outcome.cached
        assert outcome.collected_modules == ["hardware", "network"]
        assert outcome.exit_code == 0
        assert orchestrator.state_history == [
            CollectionState.IDLE,
            CollectionState.RESOLVING_CONFIG,
            CollectionState.CHECKING_CACHE,
            CollectionState.COLLECTING,
            CollectionState.AGGREGATING,
            CollectionState.CACHING,
            CollectionState.TRANSMITTING,
            CollectionState.DONE,
        ]
        assert len(engines) == 1 and engines[0].closed
        client.close.assert_called_once()
        assert cache.last_collection_time() == NOW

    def test_payload_shape(self, build, cache, client):
        orchestrator, _, _ = build()

        orchestrator.run(TWO_MODULES)
        payload = client.send.call_args[0][0]

        metadata = payload["metadata"]
        assert metadata["deviceId"] == derive_device_id(SERIAL)
        assert metadata["serialNumber"] == SERIAL
        assert metadata["collectedAt"] == datetime.fromtimestamp(NOW, timezone.utc).isoformat()
        assert metadata["collectionType"] == "Partial"
        assert metadata["enabledModules"] == ["hardware", "network"]
        assert metadata["additional"] == {"deviceName": "mac-01", "osVersion": "14.5"}
        assert "clientVersion" in metadata
        assert payload["events"] == []
        assert payload["modules"]["hardware"] == {"moduleId": "hardware", "model": "Mac14,2"}
        assert payload["hardware"] == payload["modules"]["hardware"]
        assert cache.load_payload() == payload
        assert cache.load_module_payload("network") == {"moduleId": "network", "interfaces": []}

    def test_configured_modules_run_as_full_collection(self, build, client):
        processors = [StaticProcessor("hardware"), StaticProcessor("network")]
        orchestrator, _, _ = build(processors, environ={
            "REPORTMATE_API_URL": API_URL,
            "REPORTMATE_ENABLED_MODULES": "hardware,network",
        })

        orchestrator.run()

        assert client.send.call_args[0][0]["metadata"]["collectionType"] == "Full"
        assert all(p.calls == 1 for p in processors)

    def test_configured_device_id_wins(self, build, client):
        orchestrator, _, _ = build(environ={"REPORTMATE_API_URL": API_URL, "REPORTMATE_DEVICE_ID": "dev-42"})

        orchestrator.run(TWO_MODULES)

        assert client.send.call_args[0][0]["metadata"]["deviceId"] == "dev-42"

    def test_cli_overrides_apply(self, build, client):
        orchestrator, _, client_snapshots = build(environ={})

        orchestrator.run(RunOptions(modules=["hardware"], device_id="cli-id", api_url="https://cli.example.com/"))

        assert client_snapshots[0].api_url == "https://cli.example.com"
        assert client.send.call_args[0][0]["metadata"]["deviceId"] == "cli-id"

    def test_reserved_module_name_only_under_modules(self, build, client):
        orchestrator, _, _ = build([StaticProcessor("events", {"moduleId": "events", "count": 1})])

        orchestrator.run(RunOptions(modules=["events"]))
        payload = client.send.call_args[0][0]

        assert payload["events"] == []
        assert payload["modules"]["events"] == {"moduleId": "events", "count": 1}


@pytest.mark.unit
class TestSkipAndModes:
    """Test cases for the interval check and the run modes."""

    def test_recent_collection_is_skipped(self, build, cache, client):
        cache.record_collection_time(NOW - 1800)
        orchestrator, engines, _ = build()

        outcome = orchestrator.run(TWO_MODULES)

        assert outcome.success and outcome.skipped
        assert outcome.state is CollectionState.SKIPPED
        assert outcome.exit_code == 0
        assert engines == []
        client.send.assert_not_called()

    def test_force_ignores_interval(self, build, cache, client):
        cache.record_collection_time(NOW - 1800)
        orchestrator, engines, _ = build()

        outcome = orchestrator.run(RunOptions(force=True, modules=["hardware"]))

        assert outcome.state is CollectionState.DONE
        client.send.assert_called_once()

    def test_collect_only_does_not_transmit(self, build, cache, client):
        cache.record_collection_time(NOW - 10)
        orchestrator, engines, _ = build(environ={})

        outcome = orchestrator.run(RunOptions(collect_only=True, modules=["hardware", "network"]))

        assert outcome.success
        assert outcome.state is CollectionState.DONE
        assert "not transmitted" in outcome.message
        assert CollectionState.TRANSMITTING not in orchestrator.state_history
        client.send.assert_not_called()
        assert set(cache.load_payload()["modules"]) == {"hardware", "network"}
        assert cache.last_collection_time() == NOW - 10

    def test_missing_api_url_is_fatal_before_collection(self, build, client):
        processor = StaticProcessor("hardware")
        orchestrator, engines, _ = build([processor], environ={})

        with pytest.raises(FatalConfigurationError):
            orchestrator.run(RunOptions(modules=["hardware"]))

        assert orchestrator.state is CollectionState.ERROR
        assert processor.calls == 0
        assert engines == []

    def test_transmit_only_without_cache(self, build, client):
        orchestrator, engines, _ = build()

        outcome = orchestrator.run(RunOptions(transmit_only=True))

        assert not outcome.success
        assert outcome.message == NO_CACHED_DATA_MESSAGE
        assert outcome.exit_code == 1
        assert engines == []
        client.send.assert_not_called()

    def test_undecodable_timestamp_does_not_block_collection(self, build, cache, client):
        cache.cache_dir.mkdir(parents=True)
        cache.timestamp_file.write_bytes(b"\xff\xfe17000")
        orchestrator, _, _ = build()

        outcome = orchestrator.run(TWO_MODULES)

        assert outcome.success
        assert outcome.state is CollectionState.DONE
        client.send.assert_called_once()
        assert cache.last_collection_time() == NOW

    def test_transmit_only_with_undecodable_cache(self, build, cache, client):
        cache.cache_dir.mkdir(parents=True)
        cache.payload_file.write_bytes(b'{"a": "\xff"}')
        orchestrator, _, _ = build()

        outcome = orchestrator.run(RunOptions(transmit_only=True))

        assert not outcome.success
        assert outcome.message == NO_CACHED_DATA_MESSAGE
        client.send.assert_not_called()

    def test_transmit_only_sends_cached_payload(self, build, cache, client):
        cached = {"metadata": {"deviceId": "x"}, "events": [], "modules": {"hardware": {}, "system": {}}}
        cache.persist_payload(cached)
        orchestrator, engines, _ = build()

        outcome = orchestrator.run(RunOptions(transmit_only=True))

        assert outcome.success
        assert outcome.module_count == 2
        assert client.send.call_args[0][0] == cached
        assert engines == []
        assert cache.last_collection_time() is None

    def test_transmit_only_ignores_interval(self, build, cache, client):
        cache.record_collection_time(NOW)
        cache.persist_payload({"modules": {}})
        orchestrator, _, _ = build()

        outcome = orchestrator.run(RunOptions(transmit_only=True))

        assert outcome.state is CollectionState.DONE

    def test_run_options_reject_both_modes(self):
        with pytest.raises(ValidationError):
            RunOptions(collect_only=True, transmit_only=True)

    def test_run_options_normalize_modules(self):
        assert RunOptions(modules=["Hardware", " network", "hardware"]).modules == ["hardware", "network"]


@pytest.mark.unit
class TestFailures:
    """Test cases for module, cache and transmission failures."""

    def test_failing_module_is_dropped(self, build, client):
        orchestrator, _, _ = build([
            StaticProcessor("hardware"),
            StaticProcessor("security", error=RuntimeError("osquery crashed")),
            StaticProcessor("network"),
        ])

        outcome = orchestrator.run(RunOptions(modules=["hardware", "security", "network"]))
        payload = client.send.call_args[0][0]

        assert outcome.success
        assert outcome.collected_modules == ["hardware", "network"]
        assert outcome.failed_modules == ["security"]
        assert "security" not in payload["modules"]
        assert "security" not in payload

    def test_unknown_module_is_reported(self, build):
        orchestrator, _, _ = build()

        outcome = orchestrator.run(RunOptions(modules=["hardware", "printers"]))

        assert outcome.success
        assert outcome.failed_modules == ["printers"]

    def test_non_json_module_result_is_dropped(self, build):
        orchestrator, _, _ = build([StaticProcessor("hardware", {"when": object()}), StaticProcessor("network")])

        outcome = orchestrator.run(TWO_MODULES)

        assert outcome.failed_modules == ["hardware"]

    def test_no_module_data_is_an_error(self, build, cache, client):
        orchestrator, engines, _ = build([StaticProcessor("hardware", error=RuntimeError("boom"))])

        outcome = orchestrator.run(RunOptions(modules=["hardware"]))

        assert not outcome.success
        assert outcome.state is CollectionState.ERROR
        assert outcome.message == "No module data collected"
        assert engines[0].closed
        assert cache.load_payload() is None
        client.send.assert_not_called()

    def test_transmission_failure_keeps_cache(self, build, cache, client):
        client.send.return_value = TransmissionFailure(kind=TransmissionErrorKind.HTTP, detail="HTTP 500",
                                                       status_code=500)
        orchestrator, _, _ = build()

        outcome = orchestrator.run(TWO_MODULES)

        assert not outcome.success
        assert outcome.state is CollectionState.ERROR
        assert "HTTP 500" in outcome.message
        assert "--transmit-only" in outcome.message
        assert outcome.transmission.status_code == 500
        assert cache.load_payload() is not None
        assert cache.last_collection_time() is None
        client.close.assert_called_once()

    def test_cache_write_failure_still_transmits(self, build, cache, client):
        orchestrator, _, _ = build()

        with patch.object(cache, "persist_payload", side_effect=CacheIOError("disk full")):
            outcome = orchestrator.run(TWO_MODULES)

        assert outcome.success
        assert outcome.cached is False
        client.send.assert_called_once()

    def test_timestamp_write_failure_does_not_fail_run(self, build, cache):
        orchestrator, _, _ = build()

        with patch.object(cache, "record_collection_time", side_effect=CacheIOError("read-only")):
            outcome = orchestrator.run(TWO_MODULES)

        assert outcome.success
        assert outcome.state is CollectionState.DONE


class ManagementProcessor(ModuleProcessor):
    module_id = "management"

    def collect(self, snapshot, engine):
        return {"moduleId": "management", "mdm": engine.execute("SELECT * FROM mdm").records}


@pytest.mark.unit
class TestAbnormalTermination:
    """Test cases for tearing down the extension session when a run is interrupted."""

    def test_system_exit_closes_extension_session(self, make_manager, cache, client):
        clock = FakeClock()
        handle = FakeProcessHandle(clock, session_tables({"mdm": [{"enrolled": "true"}]}))
        runner = FakeRunner(osquery_tables({}), handle=handle)
        engines = []

        def engine_factory(snapshot):
            engine = QueryEngine(snapshot, runner=runner, sleep=clock.sleep, clock=clock,
                                 extension_path=Path("/usr/local/reportmate/macadmins_extension.ext"))
            engines.append(engine)
            return engine

        orchestrator = CollectionOrchestrator(
            make_manager({"REPORTMATE_API_URL": API_URL}),
            cache=cache,
            registry=ModuleRegistry([
                ManagementProcessor(),
                StaticProcessor("security", error=SystemExit(143)),
            ]),
            engine_factory=engine_factory,
            client_factory=lambda snapshot: client,
            serial_provider=lambda: SERIAL,
            host_facts_provider=lambda: {},
            clock=lambda: NOW,
        )

        with pytest.raises(SystemExit) as exc_info:
            orchestrator.run(RunOptions(modules=["management", "security"]))

        assert exc_info.value.code == 143
        assert runner.spawns
        assert handle.sent[-1] == ".exit\n"
        assert handle.exited
        assert engines[0].extension_state is ExtensionState.TERMINATED
        client.send.assert_not_called()
        assert cache.last_collection_time() is None
