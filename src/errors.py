"""
Error taxonomy for the reconciliation core.

Every fallible step raises a TetherError carrying a static message that names
the step, optionally wrapping the underlying cause. Callers classify errors
with is_not_found() / is_conflict(), which look through wrapped causes.
"""

from typing import Optional


class TetherError(Exception):
    """Base error with a stable message and an optional cause."""

    message = "error"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        if message is not None:
            self.message = message
        self.cause = cause
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message}: {self.cause}"


# ==================== Store errors ====================


class StoreError(TetherError):
    """A store operation failed for a transient or unknown reason."""

    message = "store error"


class NotFoundError(StoreError):
    """The requested object does not exist."""

    message = "object not found"


class ConflictError(StoreError):
    """The object was modified since it was read (stale resource version)."""

    message = (
        "the object has been modified; please apply your changes "
        "to the latest version and try again"
    )


class AlreadyExistsError(StoreError):
    """An object with the same identity already exists."""

    message = "object already exists"


# ==================== Semantic refusals ====================


class BindControlledError(TetherError):
    message = (
        "refusing to bind to managed resource that is controlled by another resource"
    )


class BindMismatchError(TetherError):
    message = (
        "refusing to bind to managed resource that does not reference resource claim"
    )


class UnbindMismatchError(TetherError):
    message = (
        "refusing to 'unbind' from managed resource that does not "
        "reference resource claim"
    )


class SecretConflictError(TetherError):
    message = "cannot establish control of existing connection secret"


class PropagationNotAllowedError(TetherError):
    """Secret propagation refused: the two secrets do not consent to it."""

    message = "propagation not allowed"


class UnexpectedFromUIDError(PropagationNotAllowedError):
    message = "unexpected propagate from uid on propagated secret"


class UnexpectedToUIDError(PropagationNotAllowedError):
    message = "unexpected propagate to uid on propagator secret"


# ==================== Resolution errors ====================


class ResolutionError(TetherError):
    message = "cannot resolve reference"


class NoMatchesError(ResolutionError):
    message = "no resources matched selector"


class NoValueError(ResolutionError):
    message = "referenced field was empty (referenced resource may not yet be ready)"


# ==================== Helpers ====================


def wrap(err: BaseException, message: str) -> TetherError:
    """
    Wrap an error under a static message describing the failed step.

    The returned error keeps the classification of the wrapped error, so
    is_not_found() and is_conflict() still see through it.

    Args:
        err: The underlying error.
        message: Static message naming the step that failed.

    Returns:
        A TetherError whose cause is err.
    """
    return TetherError(message, cause=err)


def _causes(err: Optional[BaseException]):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def is_not_found(err: Optional[BaseException]) -> bool:
    """Return True if err, or anything it wraps, is a NotFoundError."""
    return any(isinstance(e, NotFoundError) for e in _causes(err))


def is_conflict(err: Optional[BaseException]) -> bool:
    """Return True if err, or anything it wraps, is a ConflictError."""
    return any(isinstance(e, ConflictError) for e in _causes(err))


def ignore_not_found(err: Optional[BaseException]) -> Optional[BaseException]:
    """Return None if err is a not-found error, otherwise err unchanged."""
    if is_not_found(err):
        return None
    return err
