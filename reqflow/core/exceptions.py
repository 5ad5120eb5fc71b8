"""
Reqflow exception hierarchy.

Every error the AI orchestration layer produces is one of the classes
below. Orchestrator operations let them propagate to the caller
unchanged; the task engine turns any of them into a failed job whose
error message is ``str(exc)``.

Usage:
    from reqflow.core.exceptions import InvalidInput, NotFound

    raise InvalidInput("requirement text must not be empty")
    raise NotFound(resource="RequirementAnalysis", resource_id=analysis_id)
"""

_BODY_EXCERPT_LIMIT = 500
_PARSE_EXCERPT_LIMIT = 200


class ReqflowError(Exception):
    """Base class for all errors raised by the orchestration layer."""


class InvalidInput(ReqflowError):
    """Raised when a caller violates a precondition.

    Examples: empty requirement text, unknown diagram type, unrecognised
    provider id, stage outside 1..3. Never retried.
    """


class ProviderUnavailable(ReqflowError):
    """Raised when no client is registered for the requested provider,
    or the vendor endpoint cannot be reached at all.
    """

    def __init__(self, provider_id: str, reason: str | None = None) -> None:
        self.provider_id = provider_id
        self.reason = reason
        msg = f"AI provider not available: {provider_id}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ProviderHttpError(ReqflowError):
    """Raised when a vendor answers with a non-2xx status.

    Args:
        status: HTTP status code returned by the vendor.
        body: Response body; kept truncated so it is safe to log.
    """

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = (body or "")[:_BODY_EXCERPT_LIMIT]
        super().__init__(f"provider returned HTTP {status}: {self.body}")


class ProviderTimeout(ReqflowError):
    """Raised when a vendor call exceeds its request deadline."""


class ArtifactParseError(ReqflowError):
    """Raised when model output holds no parseable JSON of the expected shape.

    Args:
        message: What went wrong.
        excerpt: Short slice of the raw output for diagnostics.
    """

    def __init__(self, message: str, excerpt: str = "") -> None:
        self.excerpt = (excerpt or "")[:_PARSE_EXCERPT_LIMIT]
        super().__init__(message)


class RenderError(ReqflowError):
    """Raised when the UML render server answers with a non-2xx status.

    ``status`` is None when the server could not be reached at all.
    """

    def __init__(self, status: int | None, message: str | None = None) -> None:
        self.status = status
        super().__init__(message or f"render server returned HTTP {status}")


class Unsupported(ReqflowError):
    """Raised for declared but unimplemented modes (local UML rendering)."""


class NotFound(ReqflowError):
    """Raised when the persistence port has no entity for the given id.

    Args:
        resource: Entity name (e.g. "Job", "PUMLDiagram").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class StorageError(ReqflowError):
    """Raised when the persistence port fails internally."""


class Cancelled(ReqflowError):
    """Raised when a cancellation token fires at an I/O boundary."""

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)
