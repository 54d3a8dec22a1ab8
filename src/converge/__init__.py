"""converge - Client-side resource cache with optimistic mutations."""

from contextlib import suppress

# Auth
from converge.auth import AuthProvider, RefreshingTokenProvider, StaticTokenProvider

# Cache
from converge.cache import Entry, ResourceCache, SnapshotToken
from converge.cancel import CancelToken

# Client API
from converge.client import ResourceClient, create_client
from converge.config import ClientConfig

# Duration parsing
from converge.duration import parse_duration

# Errors
from converge.errors import (
    ConflictError,
    ConvergeError,
    MalformedResponseError,
    PermanentApplicationError,
    PermanentClientError,
    PermanentError,
    ProblemDetails,
    RequestCancelledError,
    RequestTimeoutError,
    TransientError,
    TransientNetworkError,
    TransientServerError,
    UnauthorizedError,
)
from converge.keys import define_keys, make_key, prefix_of
from converge.mutation import Mutation, MutationExecutor
from converge.query import QueryExecutor, QueryObserver
from converge.resource import RestResource
from converge.retry import RetryPolicy, classify_failure

# Transports (async only)
from converge.transport import MemoryTransport, Transport

# Core types
from converge.types import (
    Duration,
    FailureClass,
    Key,
    MutationConfig,
    MutationState,
    QueryOptions,
    QueryResult,
    Request,
    Response,
    Status,
)

# Optional transport - only available when httpx is installed
with suppress(ImportError):
    from converge.transport import HttpTransport

__version__ = "0.1.0"

__all__ = [
    "AuthProvider",
    "CancelToken",
    "ClientConfig",
    "ConflictError",
    "ConvergeError",
    "Duration",
    "Entry",
    "FailureClass",
    "HttpTransport",
    "Key",
    "MalformedResponseError",
    "MemoryTransport",
    "Mutation",
    "MutationConfig",
    "MutationExecutor",
    "MutationState",
    "PermanentApplicationError",
    "PermanentClientError",
    "PermanentError",
    "ProblemDetails",
    "QueryExecutor",
    "QueryObserver",
    "QueryOptions",
    "QueryResult",
    "RefreshingTokenProvider",
    "Request",
    "RequestCancelledError",
    "RequestTimeoutError",
    "ResourceCache",
    "ResourceClient",
    "Response",
    "RestResource",
    "RetryPolicy",
    "SnapshotToken",
    "StaticTokenProvider",
    "Status",
    "TransientError",
    "TransientNetworkError",
    "TransientServerError",
    "Transport",
    "UnauthorizedError",
    "classify_failure",
    "create_client",
    "define_keys",
    "make_key",
    "parse_duration",
    "prefix_of",
]
