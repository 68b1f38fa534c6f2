"""
Configuration loading, state machines and application wiring
"""
import pytest

from commission_core.application import CommissionApp
from commission_core.conflict_resolver import SERVER_WINS
from commission_core.errors import SyncTransportError, ValidationError
from commission_core.local_store import COMPANIES
from commission_core.remote_backend import HttpRemoteBackend, UnconfiguredBackend
from commission_core.settings import Settings
from commission_core.state_machine import (
    InvalidTransitionError, build_contract_state_machine, build_payment_state_machine,
    build_sync_state_machine
)


class TestSettings:

    def test_defaults(self):
        settings = Settings.from_env(env={})
        assert settings.db_name == "commission_manager"
        assert settings.remote_base_url is None
        assert settings.sync_config().batch_size == 50

    def test_from_env_mapping(self):
        settings = Settings.from_env(env={
            "MONGO_URL": "mongodb://db:27017",
            "REMOTE_BASE_URL": "https://project.example.test",
            "SYNC_INTERVAL_SECONDS": "10",
            "SYNC_AUTO": "false",
            "SYNC_CONFLICT_STRATEGY": SERVER_WINS,
            "SYNC_MAX_RETRIES": "",
        })
        config = settings.sync_config()

        assert settings.mongo_url == "mongodb://db:27017"
        assert config.sync_interval_seconds == 10.0
        assert config.auto_sync is False
        assert config.conflict_strategy == SERVER_WINS
        assert config.max_retries == 3

    def test_invalid_value_names_variable(self):
        with pytest.raises(ValidationError) as exc:
            Settings.from_env(env={"SYNC_BATCH_SIZE": "0"})
        assert "SYNC_BATCH_SIZE" in exc.value.message

        with pytest.raises(ValidationError):
            Settings.from_env(env={"SYNC_CONFLICT_STRATEGY": "coin-flip"})


class TestStateMachines:

    def test_sync_cycle(self):
        machine = build_sync_state_machine()
        state = machine.transition("idle", "syncing")
        state = machine.transition(state, "error")
        assert machine.transition(state, "idle") == "idle"

        with pytest.raises(InvalidTransitionError) as exc:
            machine.transition("idle", "success")
        assert exc.value.allowed == ["syncing"]

    def test_payment_and_contract(self):
        assert build_payment_state_machine().can_transition("pending", "completed")
        assert not build_payment_state_machine().can_transition("completed", "pending")
        contract = build_contract_state_machine()
        assert sorted(contract.get_allowed_transitions("active")) == ["cancelled", "completed"]


class TestApplication:

    async def test_wiring_and_lifecycle(self, db, clock, backend):
        app = CommissionApp(db, backend, settings=Settings(sync_auto=False), clock=clock)
        await app.startup(online=True)

        status = await app.coordinator.get_status()
        assert status["is_online"] is True
        assert status["config"]["auto_sync"] is False

        await app.shutdown()
        assert backend.closed is True
        assert app.coordinator._auto_sync_task is None

    async def test_managers_share_queue(self, db, clock, backend):
        from commission_core.session import SessionContext

        app = CommissionApp(db, backend, settings=Settings(sync_auto=False), clock=clock)
        await app.startup(online=True)
        await app.companies.create_company(SessionContext(user_id="u-1"), {"name": "Acme"})

        report = await app.coordinator.sync()
        await app.shutdown()

        assert report.pushed == 1
        assert len(backend.tables[COMPANIES]) == 1

    def test_backend_selection(self):
        remote = CommissionApp.from_settings(Settings(remote_base_url="https://project.example.test"))
        local_only = CommissionApp.from_settings(Settings())

        assert isinstance(remote.backend, HttpRemoteBackend)
        assert isinstance(local_only.backend, UnconfiguredBackend)

    async def test_unconfigured_backend_fails_transport(self):
        with pytest.raises(SyncTransportError):
            await UnconfiguredBackend().pull(COMPANIES)
