"""
APPLICATION WIRING

Builds the whole core from Settings:

    settings = Settings.from_env()
    app = CommissionApp.from_settings(settings)
    await app.startup(online=True)
    ...
    await app.shutdown()

startup() creates the local store indices, replays any settlement left
half-applied by a crash, then starts the sync coordinator.
"""

from typing import Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from .certifications import CertificationManager
from .clock import Clock
from .companies import CompanyManager
from .contracts import ContractManager
from .local_store import LocalStore
from .payment_allocation import PaymentAllocationEngine
from .payments import PaymentManager
from .remote_backend import RemoteBackend, HttpRemoteBackend, UnconfiguredBackend
from .sequences import AtomicSequence
from .settings import Settings
from .sync_coordinator import SyncCoordinator
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class CommissionApp:

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        backend: RemoteBackend,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        client: Optional[AsyncIOMotorClient] = None
    ):
        self.settings = settings or Settings()
        self.client = client
        self.db = db

        self.store = LocalStore(db, clock)
        self.sequences = AtomicSequence(db, self.store.clock)
        self.queue = SyncQueue(self.store, self.sequences)
        self.engine = PaymentAllocationEngine(self.store, self.queue)
        self.backend = backend
        self.coordinator = SyncCoordinator(
            self.store, self.queue, backend, self.settings.sync_config()
        )

        self.companies = CompanyManager(self.store, self.queue)
        self.contracts = ContractManager(self.store, self.queue)
        self.certifications = CertificationManager(self.store, self.queue, self.contracts)
        self.payments = PaymentManager(self.store, self.queue, self.contracts, self.engine)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: Optional[RemoteBackend] = None,
        clock: Optional[Clock] = None
    ) -> "CommissionApp":
        client = AsyncIOMotorClient(settings.mongo_url)
        db = client[settings.db_name]

        if backend is None:
            if settings.remote_base_url:
                backend = HttpRemoteBackend(
                    settings.remote_base_url,
                    api_key=settings.remote_api_key,
                    access_token=settings.remote_access_token,
                    timeout=settings.remote_timeout_seconds
                )
            else:
                logger.warning("REMOTE_BASE_URL not set; changes stay local until a backend is configured")
                backend = UnconfiguredBackend()

        return cls(db, backend, settings=settings, clock=clock, client=client)

    async def startup(self, online: bool = False) -> None:
        await self.store.create_indexes()
        recovered = await self.engine.recover()
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted settlements")
        await self.coordinator.start(online=online)
        logger.info(f"Commission core started (db={self.settings.db_name})")

    async def shutdown(self) -> None:
        await self.coordinator.stop()
        await self.backend.close()
        if self.client is not None:
            self.client.close()
        logger.info("Commission core stopped")
