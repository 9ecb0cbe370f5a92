"""System information detection for Host Hardener."""

import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from host_hardener.exceptions import ExecutionError, OperationTimeout, SystemRequirementError
from host_hardener.types import PackageManager
from host_hardener.utils.command import CommandRunner

SBIN_DIRS = ("/usr/sbin", "/usr/local/sbin", "/sbin")

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

PACKAGE_COMMANDS: Dict[PackageManager, Dict[str, List[str]]] = {
    PackageManager.APT: {
        "refresh": ["apt-get", "update"],
        "upgrade": ["apt-get", "upgrade", "-y"],
        "install": ["apt-get", "install", "-y"],
        "autoremove": ["apt-get", "autoremove", "-y"],
        "clean": ["apt-get", "clean"],
    },
    PackageManager.DNF: {
        "refresh": ["dnf", "makecache"],
        "upgrade": ["dnf", "upgrade", "-y"],
        "install": ["dnf", "install", "-y"],
        "autoremove": ["dnf", "autoremove", "-y"],
        "clean": ["dnf", "clean", "all"],
    },
}


class SystemInfo:
    """Detect and store system capabilities."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        os_release: Path = Path("/etc/os-release"),
    ) -> None:
        """Initialize system information detection."""
        self.runner = runner or CommandRunner()
        self.distro = self._detect_distro(os_release)
        self.package_manager = self._detect_package_manager()
        self.is_root = os.geteuid() == 0
        self.has_systemd = self.runner.available("systemctl")
        self._ssh_service: Optional[str] = None

    def _detect_distro(self, os_release: Path) -> str:
        """Detect Linux distribution."""
        if not os_release.exists():
            return "unknown"

        with open(os_release) as f:
            for line in f:
                if line.startswith("ID="):
                    return line.split("=", 1)[1].strip().strip('"').lower()
        return "unknown"

    def _detect_package_manager(self) -> PackageManager:
        """Detect available package manager."""
        managers = {
            "apt-get": PackageManager.APT,
            "dnf": PackageManager.DNF,
        }

        for cmd, pm_type in managers.items():
            if self.runner.available(cmd):
                return pm_type

        return PackageManager.NONE

    def package_command(
        self, action: str, packages: Sequence[str] = ()
    ) -> Tuple[List[str], Mapping[str, str]]:
        """Get the package command and environment for this system.

        Args:
            action: One of refresh, upgrade, install, autoremove, clean
            packages: Packages for ``install``

        Raises:
            SystemRequirementError: If no supported package manager exists
        """
        commands = PACKAGE_COMMANDS.get(self.package_manager)
        if commands is None:
            raise SystemRequirementError("No supported package manager found")
        if action not in commands:
            raise ValueError(f"Unknown package action: {action}")

        env = APT_ENV if self.package_manager == PackageManager.APT else {}
        return commands[action] + list(packages), env

    def find_binary(self, name: str) -> Optional[str]:
        """Locate an executable, also looking in sbin directories."""
        found = shutil.which(name)
        if found:
            return found
        for directory in SBIN_DIRS:
            candidate = Path(directory) / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return None

    def unit_state(self, unit: str) -> str:
        """Return systemd's LoadState for ``unit`` (loaded, not-found, masked...)."""
        try:
            result = self.runner.run(
                ["systemctl", "show", "-p", "LoadState", "--value", unit], read_only=True
            )
        except (ExecutionError, OperationTimeout):
            return "not-found"
        if not result.success:
            return "not-found"
        return result.stdout.strip() or "not-found"

    def unit_installed(self, unit: str) -> bool:
        return self.unit_state(unit) == "loaded"

    def ssh_service_name(self, configured: Optional[str] = None) -> Optional[str]:
        """Detect the SSH service unit name.

        Returns:
            SSH service name or None if not found
        """
        if configured:
            return configured
        if self._ssh_service:
            return self._ssh_service

        for name in ["ssh", "sshd", "openssh"]:
            if self.unit_installed(f"{name}.service"):
                self._ssh_service = name
                return name

        return None

    def check_requirements(self, sshd_config: Path = Path("/etc/ssh/sshd_config")) -> List[str]:
        """Check if system meets minimum requirements."""
        issues: List[str] = []

        if self.package_manager == PackageManager.NONE:
            issues.append("No supported package manager found")

        if not sshd_config.exists():
            issues.append(f"SSH config not found at {sshd_config}")

        if not self.has_systemd:
            issues.append("systemd (systemctl) not found")

        return issues

    def to_dict(self) -> Dict[str, str]:
        """Convert system info to dictionary."""
        return {
            "distro": self.distro,
            "package_manager": self.package_manager.value,
            "is_root": str(self.is_root),
            "has_systemd": str(self.has_systemd),
        }
