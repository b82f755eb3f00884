"""Error taxonomy for the eLogbook ledger.

Every error raised by the write pipeline and the query layer derives from
ELogbookError and carries enough structure (kind + offending field/entity)
for a caller to render a user-facing message.

- ValidationError          — bad or missing input, recoverable by the caller
- NotFoundError            — a referenced entity id does not exist
- UnauthenticatedError     — no resolvable acting user
- PermissionDeniedError    — the acting user's role may not perform the change
- InvariantViolationError  — system-managed column tampering, ledger mutation
- ConflictError            — the store refused a write that clashes with stored rows
- StorageUnavailableError  — the backing storage medium cannot be reached

ConflictError and StorageUnavailableError come from the store itself; the
transaction is rolled back. The rest are raised before any store mutation.
"""

from typing import Any


class ELogbookError(Exception):
    """Base class for all eLogbook ledger errors.

    Args:
        message: Human-readable description of the failure.
        field: Offending input field or column key, if any.
        resource: Entity kind the error refers to, if any.
        resource_id: Entity id the error refers to, if any.
    """

    kind: str = "error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.resource = resource
        self.resource_id = resource_id

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable description of the error.

        Returns:
            Dict with kind and message plus whichever of field, resource and
            resource_id are set.
        """
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.field is not None:
            body["field"] = self.field
        if self.resource is not None:
            body["resource"] = self.resource
        if self.resource_id is not None:
            body["resource_id"] = self.resource_id
        return body


class ValidationError(ELogbookError):
    """Input rejected; the caller can correct it and retry."""

    kind = "validation_error"


class NotFoundError(ELogbookError):
    """A referenced entity does not exist."""

    kind = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource} '{resource_id}' not found",
            resource=resource,
            resource_id=resource_id,
        )


class UnauthenticatedError(ELogbookError):
    """No resolvable acting user was supplied."""

    kind = "unauthenticated"

    def __init__(self, message: str = "An authenticated user is required") -> None:
        super().__init__(message)


class PermissionDeniedError(ELogbookError):
    """The acting user's role does not allow the requested change."""

    kind = "permission_denied"


class InvariantViolationError(ELogbookError):
    """A protected structure (system-managed column, audit record) was altered."""

    kind = "invariant_violation"


class StorageUnavailableError(ELogbookError):
    """The backing storage could not be reached; the write was not applied."""

    kind = "storage_unavailable"


class ConflictError(ELogbookError):
    """The store rejected a write that clashes with stored rows (e.g. a reused id)."""

    kind = "conflict"
