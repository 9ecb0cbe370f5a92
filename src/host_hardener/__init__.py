"""Host Hardener - transactional security hardening for Linux hosts."""

__version__ = "1.0.0"
__license__ = "MIT"

from host_hardener.exceptions import (
    HardenerError,
    ConfigurationError,
    SystemRequirementError,
    ValidationError,
    ValidationRejected,
    RollbackError,
)
from host_hardener.orchestrator import HostEnvironment, Step, StepOrchestrator
from host_hardener.report import SummaryReport
from host_hardener.transaction import ConfigTransaction
from host_hardener.system_info import SystemInfo

__all__ = [
    "ConfigTransaction",
    "HostEnvironment",
    "Step",
    "StepOrchestrator",
    "SummaryReport",
    "SystemInfo",
    "HardenerError",
    "ConfigurationError",
    "SystemRequirementError",
    "ValidationError",
    "ValidationRejected",
    "RollbackError",
]
