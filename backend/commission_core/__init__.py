"""
Offline-first commission manager core.

Local MongoDB store with a durable sync queue replicated to a remote REST
backend, and the payment allocation engine that settles certification
commissions.
"""

from .application import CommissionApp
from .certifications import CertificationManager
from .clock import Clock, FixedClock
from .companies import CompanyManager
from .conflict_resolver import ConflictResolver, ConflictStore, LAST_WRITE_WINS, SERVER_WINS, MANUAL
from .contracts import ContractManager
from .errors import (
    CommissionError, ValidationError, NotFoundError, ConflictError,
    SyncTransportError, IntegrityError, StorageError
)
from .local_store import LocalStore
from .logging_config import configure_logging
from .payment_allocation import PaymentAllocationEngine, plan_specific, plan_global
from .payments import PaymentManager
from .remote_backend import RemoteBackend, HttpRemoteBackend, PushAck
from .session import SessionContext
from .settings import Settings, SyncConfig
from .state_machine import InvalidTransitionError
from .sync_coordinator import SyncCoordinator, SyncReport
from .sync_queue import SyncQueue

__all__ = [
    "CommissionApp",
    "CertificationManager",
    "Clock",
    "FixedClock",
    "CompanyManager",
    "ConflictResolver",
    "ConflictStore",
    "LAST_WRITE_WINS",
    "SERVER_WINS",
    "MANUAL",
    "ContractManager",
    "CommissionError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "SyncTransportError",
    "IntegrityError",
    "StorageError",
    "LocalStore",
    "configure_logging",
    "PaymentAllocationEngine",
    "plan_specific",
    "plan_global",
    "PaymentManager",
    "RemoteBackend",
    "HttpRemoteBackend",
    "PushAck",
    "SessionContext",
    "Settings",
    "SyncConfig",
    "InvalidTransitionError",
    "SyncCoordinator",
    "SyncReport",
    "SyncQueue",
]
