"""devcollab - compensating repository transactions and a project collaboration hub."""

__version__ = "0.1.0"

from devcollab.core import TransactionCoordinator
from devcollab.errors import (
    CompensationFailure,
    ConflictError,
    DevCollabError,
    ErrorKind,
    LocalFailure,
    NotFoundError,
    RemoteFailure,
    TransactionCancelled,
    ValidationError,
)
from devcollab.events import Event, EventType
from devcollab.hub import Hub
from devcollab.models import (
    Transaction,
    TransactionResult,
    TransactionStatus,
    TransactionStep,
)
from devcollab.repositories import RepositoryService
from devcollab.session import ClientSession

__all__ = [
    "ClientSession",
    "CompensationFailure",
    "ConflictError",
    "DevCollabError",
    "ErrorKind",
    "Event",
    "EventType",
    "Hub",
    "LocalFailure",
    "NotFoundError",
    "RemoteFailure",
    "RepositoryService",
    "Transaction",
    "TransactionCancelled",
    "TransactionCoordinator",
    "TransactionResult",
    "TransactionStatus",
    "TransactionStep",
    "ValidationError",
]
