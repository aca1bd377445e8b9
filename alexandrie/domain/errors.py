"""
Error taxonomy for the registry core.

Service-level errors (``RegistryError`` subclasses) carry the HTTP status and
the public ``detail`` string that the API layer renders as
``{"errors": [{"detail": ...}]}``. Component errors raised by the stores are
kept separate and are translated by the services.
"""

from __future__ import annotations

from typing import Optional


# ---------------------------------------------------------------------------
# Service-level errors
# ---------------------------------------------------------------------------


class RegistryError(Exception):
    """Base class for errors returned to registry clients."""

    status_code: int = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidMetadata(RegistryError):
    status_code = 400

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"invalid metadata field `{field}`: {reason}")
        self.field = field
        self.reason = reason


class PayloadTooLarge(RegistryError):
    status_code = 413

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"crate tarball of {size} bytes exceeds the {limit} bytes limit")
        self.size = size
        self.limit = limit


class DuplicateVersion(RegistryError):
    status_code = 409

    def __init__(self, name: str, vers: str) -> None:
        super().__init__(f"crate '{name}' already has a version '{vers}'")
        self.name = name
        self.vers = vers


class NotAnOwner(RegistryError):
    status_code = 403

    def __init__(self, name: str) -> None:
        super().__init__(f"you are not an owner of crate '{name}'")
        self.name = name


class NotFound(RegistryError):
    status_code = 404


class Yanked(RegistryError):
    status_code = 410

    def __init__(self, name: str, vers: str) -> None:
        super().__init__(f"version '{vers}' of crate '{name}' has been yanked")


class InvalidOwnership(RegistryError):
    status_code = 400


class Unauthorized(RegistryError):
    status_code = 401


class StorageFailure(RegistryError):
    """An underlying store failed; the cause is logged, never returned."""

    status_code = 500

    def __init__(self, cause: Optional[BaseException] = None) -> None:
        super().__init__("internal storage error, please retry later")
        self.cause = cause


class Inconsistent(RegistryError):
    """Compensation failed and the stores need operator attention."""

    status_code = 500

    def __init__(self, repair: str) -> None:
        super().__init__("the registry is in an inconsistent state, an operator has been notified")
        self.repair = repair


# ---------------------------------------------------------------------------
# CrateStore errors
# ---------------------------------------------------------------------------


class CrateStoreError(Exception):
    pass


class AlreadyExists(CrateStoreError):
    pass


class BlobNotFound(CrateStoreError):
    pass


class StoreIOError(CrateStoreError):
    pass


class InvalidKey(CrateStoreError):
    pass


# ---------------------------------------------------------------------------
# IndexRepository errors
# ---------------------------------------------------------------------------


class IndexRepositoryError(Exception):
    pass


class IndexVersionExists(IndexRepositoryError):
    pass


class IndexCrateNotFound(IndexRepositoryError):
    pass


class IndexCommitFailed(IndexRepositoryError):
    pass


class GitCommandError(IndexRepositoryError):
    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"`git {' '.join(args)}` exited with {returncode}: {stderr.strip()}")
        self.git_args = args
        self.returncode = returncode
        self.stderr = stderr


# ---------------------------------------------------------------------------
# MetadataStore errors
# ---------------------------------------------------------------------------


class MetadataStoreError(Exception):
    pass


class VersionAlreadyExists(MetadataStoreError):
    pass


class MetadataStorageError(MetadataStoreError):
    pass
