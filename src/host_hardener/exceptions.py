"""Custom exceptions for Host Hardener."""

from pathlib import Path
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from host_hardener.types import ValidationReport


class HardenerError(Exception):
    """Base exception for all hardener errors."""

    pass


class ConfigurationError(HardenerError):
    """Raised when configuration is invalid."""

    pass


class SystemRequirementError(HardenerError):
    """Raised when system requirements are not met."""

    pass


class PrivilegeError(HardenerError):
    """Raised when the run lacks root privileges."""

    pass


class ValidationError(HardenerError):
    """Raised when operator input fails validation."""

    pass


class FileIOError(HardenerError):
    """Raised when a filesystem operation fails."""

    def __init__(self, path: Union[str, Path], cause: object) -> None:
        self.path = str(path)
        self.cause = cause
        super().__init__(f"{self.path}: {cause}")


class FormatError(HardenerError):
    """Raised when a content transform cannot be applied safely."""

    pass


class ValidationRejected(HardenerError):
    """Raised when a rewritten file fails its validator and was rolled back."""

    def __init__(self, path: Union[str, Path], report: "ValidationReport") -> None:
        self.path = str(path)
        self.report = report
        detail = report.diagnostics.strip() or "no diagnostics"
        super().__init__(f"Validation rejected {self.path}: {detail}")


class ExecutionError(HardenerError):
    """Raised when an external command cannot be launched."""

    pass


class OperationTimeout(HardenerError):
    """Raised when a bounded operation exceeds its deadline."""

    pass


class RollbackError(HardenerError):
    """Raised when restoring a backup fails."""

    def __init__(self, path: Union[str, Path], cause: object) -> None:
        self.path = str(path)
        self.cause = cause
        super().__init__(f"Rollback of {self.path} failed: {cause}")


class TransactionStateError(HardenerError):
    """Raised when a transaction is used after commit or rollback."""

    pass


class InteractionError(HardenerError):
    """Raised when an interaction gate cannot provide an answer."""

    pass

