"""
Shared fixtures: in-memory Motor database (mongomock-motor), a fixed clock
and a scriptable remote backend.
"""
import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from mongomock_motor import AsyncMongoMockClient

from commission_core.clock import FixedClock, parse_timestamp, record_timestamp
from commission_core.certifications import CertificationManager
from commission_core.companies import CompanyManager
from commission_core.contracts import ContractManager
from commission_core.errors import SyncTransportError
from commission_core.local_store import LocalStore, CONTRACTS, CERTIFICATIONS, COMPANIES
from commission_core.models import SyncQueueItem
from commission_core.payment_allocation import PaymentAllocationEngine
from commission_core.payments import PaymentManager
from commission_core.remote_backend import RemoteBackend, PushAck
from commission_core.sequences import AtomicSequence
from commission_core.session import SessionContext
from commission_core.settings import SyncConfig
from commission_core.sync_coordinator import SyncCoordinator
from commission_core.sync_queue import SyncQueue


class FakeRemoteBackend(RemoteBackend):
    """In-memory backend; flip the attributes to script failures"""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.pushed: List[SyncQueueItem] = []
        self.fetched: List[str] = []
        self.fail_push = False
        self.fail_pull_tables: set = set()
        self.reject_tables: set = set()
        self.assign_ids: Dict[str, str] = {}
        self.push_delay = 0.0
        self.closed = False

    async def push(self, item: SyncQueueItem) -> PushAck:
        if self.push_delay:
            await asyncio.sleep(self.push_delay)
        if self.fail_push:
            raise SyncTransportError("Remote backend unreachable")
        self.pushed.append(item)
        if item.table in self.reject_tables:
            return PushAck(accepted=False, error="400: rejected")

        remote_id = self.assign_ids.get(item.record_id, item.record_id)
        if item.action == "DELETE":
            self.tables[item.table].pop(remote_id, None)
        else:
            self.tables[item.table][remote_id] = {**item.payload, "id": remote_id}
        return PushAck(accepted=True, remote_id=remote_id)

    async def pull(self, table: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        if table in self.fail_pull_tables:
            raise SyncTransportError(f"Pull of {table} failed")
        rows = [dict(r) for r in self.tables[table].values()]
        if since is not None:
            rows = [r for r in rows if parse_timestamp(record_timestamp(r)) > since]
        return rows

    async def fetch(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self.fetched.append(record_id)
        row = self.tables[table].get(record_id)
        return dict(row) if row else None

    async def close(self) -> None:
        self.closed = True


# ============================================
# CORE FIXTURES
# ============================================

@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 6, 15, 12, 0, 0))


@pytest.fixture
def db():
    return AsyncMongoMockClient()["commission_test"]


@pytest.fixture
def store(db, clock):
    return LocalStore(db, clock)


@pytest.fixture
def sequences(db, clock):
    return AtomicSequence(db, clock)


@pytest.fixture
def queue(store, sequences):
    return SyncQueue(store, sequences)


@pytest.fixture
def engine(store, queue):
    return PaymentAllocationEngine(store, queue)


@pytest.fixture
def backend():
    return FakeRemoteBackend()


@pytest.fixture
def sync_config():
    return SyncConfig(
        auto_sync=False,
        sync_interval_seconds=3600,
        batch_size=50,
        max_retries=3,
        retry_delay_seconds=0,
        debounce_seconds=0,
    )


@pytest.fixture
async def coordinator(store, queue, backend, sync_config):
    coordinator = SyncCoordinator(store, queue, backend, sync_config)
    yield coordinator
    await coordinator.stop()


# ============================================
# DOMAIN FIXTURES
# ============================================

@pytest.fixture
def companies(store, queue):
    return CompanyManager(store, queue)


@pytest.fixture
def contracts(store, queue):
    return ContractManager(store, queue)


@pytest.fixture
def certifications(store, queue, contracts):
    return CertificationManager(store, queue, contracts)


@pytest.fixture
def payments(store, queue, contracts, engine):
    return PaymentManager(store, queue, contracts, engine)


@pytest.fixture
async def session(store):
    """Session with a selected company"""
    company_id = await store.add(COMPANIES, {
        "user_id": "user-1",
        "name": "Acme Works",
        "director": "",
        "description": "",
        "default_commission_percent": 10.0,
        "status": "active",
        "deleted_at": None,
    })
    return SessionContext(user_id="user-1", company_id=company_id)


async def _add_contract(store, company_id: str, base_amount: float = 100000.0, **extra) -> str:
    """Insert a contract straight into the store"""
    record = {
        "company_id": company_id,
        "contract_number": extra.pop("contract_number", "C-001"),
        "name": extra.pop("name", "Main works"),
        "base_amount": base_amount,
        "available_balance": base_amount,
        "custom_commission_percent": None,
        "status": "active",
        "notes": "",
    }
    record.update(extra)
    return await store.add(CONTRACTS, record)


async def _add_certification(store, contract_id: str, period: str, owed: float, **extra) -> str:
    """Insert a pending certification owing `owed` (10% of the certified amount)"""
    record = {
        "contract_id": contract_id,
        "period": period,
        "certified_amount": owed * 10,
        "commission_percent": 10.0,
        "computed_commission": owed,
        "manual_commission_override": None,
        "paid": False,
        "payment_id": None,
        "notes": "",
    }
    record.update(extra)
    return await store.add(CERTIFICATIONS, record)


@pytest.fixture
def add_contract(store):
    async def _add(company_id: str, base_amount: float = 100000.0, **extra) -> str:
        return await _add_contract(store, company_id, base_amount, **extra)
    return _add


@pytest.fixture
def add_certification(store):
    async def _add(contract_id: str, period: str, owed: float, **extra) -> str:
        return await _add_certification(store, contract_id, period, owed, **extra)
    return _add
