"""
Exception taxonomy shared by the repositories and the tool layer.

Repositories raise these before touching the store; tools turn them into
tool-level failures. Anything that is not a WBSError is treated as an
infrastructure failure by the dispatcher.
"""

from typing import Optional


class WBSError(Exception):
    """Base class for domain errors reported back to the caller."""


class NotFoundError(WBSError):
    """Referenced task, artifact or dependency does not exist."""

    def __init__(self, entity: str, entity_id: Optional[str]):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConflictError(WBSError):
    """Caller-supplied version does not match the stored version."""

    def __init__(self, entity: str, expected_version: int, current_version: int):
        self.entity = entity
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"{entity} has been modified by another user. "
            f"Expected version {expected_version}, but current version is {current_version}"
        )


class ValidationError(WBSError):
    """Input would violate an invariant (cycle, duplicate, missing field)."""


class ClientError(Exception):
    """Failure on the calling side of the protocol."""


class RequestTimeoutError(ClientError):
    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request timeout: {method} (no response within {timeout}s)")


class ConnectionClosedError(ClientError):
    """The server stream closed while requests were pending."""


class RemoteError(ClientError):
    """JSON-RPC error object returned by the server."""

    def __init__(self, code: int, message: str, data=None):
        self.code = code
        self.data = data
        super().__init__(f"[{code}] {message}")
