"""
Error taxonomy shared by the registry, the retry layer and the service clients.
"""

from __future__ import annotations


class XiaoguangError(Exception):
    """Base class for application errors."""


class ServiceError(XiaoguangError):
    """A call to an external backing service failed.

    Attributes:
        service: short service name ("chroma", "neo4j", "embedding", "chat")
        status: HTTP status code when the failure came from a response
    """

    def __init__(self, message: str, *, service: str = "", status: int | None = None):
        self.service = service
        self.status = status
        super().__init__(f"[{service}] {message}" if service else message)


class TransientServiceError(ServiceError):
    """Connection failures, timeouts, throttling and 5xx responses. Retryable."""


class PermanentServiceError(ServiceError):
    """Rejected requests and malformed responses. Never retried."""


class IdentityError(XiaoguangError):
    pass


class IdentityNotFoundError(IdentityError):
    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"identity not found: {identifier}")


class DuplicateMasterError(IdentityError):
    def __init__(self, existing_id: str, rejected_id: str):
        self.existing_id = existing_id
        self.rejected_id = rejected_id
        super().__init__(
            f"master already registered as {existing_id}; refusing {rejected_id}"
        )


class ImmutableCanonicalIdError(IdentityError):
    def __init__(self, canonical_id: str, attempted: str):
        self.canonical_id = canonical_id
        self.attempted = attempted
        super().__init__(
            f"canonical_id {canonical_id} cannot be changed to {attempted}"
        )


def classify_http_status(status: int) -> type[ServiceError]:
    if status == 429 or status >= 500:
        return TransientServiceError
    return PermanentServiceError
