from .batch import BatchExecutor, BatchRun
from .client import TrelloClient
from .errors import (
    ClientFailure,
    ExecutorError,
    NetworkFailure,
    OperationCancelled,
    RetriesExhausted,
    SelectionError,
    ServerFailure,
    TimeoutFailure,
    TrelloApiError,
    TrelloAuthError,
)
from .executor import (
    ExecutionState,
    RequestDescriptor,
    RequestEvent,
    RequestExecutor,
    RetryPolicy,
)
from .operations import BulkOperations, CardUpdate, run_bulk_operation
from .report import BulkReport, ItemFailure, ItemSuccess, aggregate
from .selection import Candidate, SelectionCriteria, SelectionResolver
from .settings import TrelloSettings

__all__ = [
    "BatchExecutor",
    "BatchRun",
    "BulkOperations",
    "BulkReport",
    "Candidate",
    "CardUpdate",
    "ClientFailure",
    "ExecutionState",
    "ExecutorError",
    "ItemFailure",
    "ItemSuccess",
    "NetworkFailure",
    "OperationCancelled",
    "RequestDescriptor",
    "RequestEvent",
    "RequestExecutor",
    "RetriesExhausted",
    "RetryPolicy",
    "SelectionCriteria",
    "SelectionError",
    "SelectionResolver",
    "ServerFailure",
    "TimeoutFailure",
    "TrelloApiError",
    "TrelloAuthError",
    "TrelloClient",
    "TrelloSettings",
    "aggregate",
    "run_bulk_operation",
]
