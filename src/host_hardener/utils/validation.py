"""Input validation utilities."""

import pwd
import re
import socket
from pathlib import Path
from typing import Iterable, List, Optional

from host_hardener.exceptions import ValidationError

USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

KEY_TYPE_PREFIXES = (
    "ssh-rsa",
    "ssh-ed25519",
    "ecdsa-sha2-",
    "sk-ssh-ed25519",
    "sk-ecdsa-sha2-",
)


class Validator:
    """Validate inputs and system state."""

    @staticmethod
    def validate_port(port: int) -> None:
        """Validate port number.

        Args:
            port: Port number to validate

        Raises:
            ValidationError: If port is invalid
        """
        if not (1 <= port <= 65535):
            raise ValidationError(f"Invalid port: {port}. Must be between 1-65535")

    @staticmethod
    def parse_port(value: str, default: int) -> int:
        """Parse an operator-entered port, falling back to ``default`` when blank."""
        value = value.strip()
        if not value:
            return default
        if not value.isdigit():
            raise ValidationError(f"Invalid port: {value!r}. Must be a number")
        port = int(value)
        Validator.validate_port(port)
        return port

    @staticmethod
    def validate_username(username: str) -> None:
        if not username or not USERNAME_PATTERN.match(username):
            raise ValidationError(f"Invalid username format: {username!r}")

    @staticmethod
    def validate_user_exists(username: str) -> bool:
        """Check if user exists on system.

        Args:
            username: Username to check

        Returns:
            True if user exists, False otherwise
        """
        try:
            pwd.getpwnam(username)
            return True
        except KeyError:
            return False

    @staticmethod
    def has_authorized_keys(home: Path) -> bool:
        """Check if a home directory holds at least one usable public key.

        Args:
            home: Home directory to inspect

        Returns:
            True if ``~/.ssh/authorized_keys`` holds a recognised key line
        """
        auth_keys = home / ".ssh" / "authorized_keys"
        try:
            if not auth_keys.is_file() or auth_keys.stat().st_size == 0:
                return False
            content = auth_keys.read_text(errors="replace")
        except OSError:
            return False

        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            # Key lines may start with options such as from="..."
            if any(token.startswith(KEY_TYPE_PREFIXES) for token in line.split()):
                return True
        return False

    @staticmethod
    def users_with_keys(
        candidates: Optional[Iterable[str]] = None, min_uid: int = 1000
    ) -> List[str]:
        """List non-root accounts that can log in with a public key.

        Args:
            candidates: Usernames to check; all regular accounts if None
            min_uid: Lowest uid counted as a regular account

        Returns:
            Usernames whose authorized_keys hold a usable key
        """
        if candidates is None:
            entries = [e for e in pwd.getpwall() if e.pw_uid >= min_uid and e.pw_uid != 65534]
        else:
            entries = []
            for name in candidates:
                try:
                    entries.append(pwd.getpwnam(name))
                except KeyError:
                    continue

        return [
            e.pw_name
            for e in entries
            if e.pw_uid != 0 and Validator.has_authorized_keys(Path(e.pw_dir))
        ]

    @staticmethod
    def check_port_available(port: int) -> bool:
        """Check if port is available.

        Args:
            port: Port number to check

        Returns:
            True if port is available, False if in use
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.settimeout(1)
                return s.connect_ex(("127.0.0.1", port)) != 0
        except OSError:
            return False
