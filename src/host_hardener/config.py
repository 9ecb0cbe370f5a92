"""Configuration management for Host Hardener."""

from pathlib import Path
from typing import Annotated, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_SYSCTL_PARAMETERS: Dict[str, str] = {
    "net.ipv4.conf.default.rp_filter": "1",
    "net.ipv4.conf.all.rp_filter": "1",
    "net.ipv4.icmp_echo_ignore_broadcasts": "1",
    "net.ipv4.icmp_ignore_bogus_error_responses": "1",
    "net.ipv4.conf.all.log_martians": "1",
}

DEFAULT_DISABLED_UNITS = [
    "bluetooth.service",
    "avahi-daemon.service",
    "avahi-daemon.socket",
]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _split_csv(v: object) -> List[str]:
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    if isinstance(v, (list, tuple)):
        return [str(item).strip() for item in v if str(item).strip()]
    return []


class SSHConfig(BaseSettings):
    """SSH daemon settings."""

    config_path: Path = Field(default=Path("/etc/ssh/sshd_config"))
    port: int = Field(default=22, ge=1, le=65535, description="SSH port number")
    permit_root_login: bool = Field(default=False)
    password_authentication: bool = Field(default=False)
    pubkey_authentication: bool = Field(default=True)
    use_pam: bool = Field(default=False)
    sshd_binary: str = Field(default="sshd")
    service_name: Optional[str] = Field(
        default=None, description="SSH unit name; detected when unset"
    )
    require_authorized_keys: bool = Field(
        default=True, description="Refuse to disable passwords when no account has keys"
    )
    key_users: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Accounts checked for authorized keys; all regular accounts if empty",
    )
    verify_effective: bool = Field(
        default=True, description="Check 'sshd -T' output after the syntax test"
    )

    model_config = SettingsConfigDict(
        env_prefix="SSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("key_users", mode="before")
    @classmethod
    def parse_key_users(cls, v: object) -> List[str]:
        """Parse key users from comma-separated string or list."""
        return _split_csv(v)


class FirewallConfig(BaseSettings):
    """UFW rule settings."""

    allow_https: bool = Field(default=True)
    rate_limit_ssh: bool = Field(default=True)
    keep_current_ssh_port: bool = Field(
        default=True, description="Keep the port sshd listens on now open as well"
    )
    extra_ports: Annotated[List[int], NoDecode] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="FIREWALL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("extra_ports", mode="before")
    @classmethod
    def parse_extra_ports(cls, v: object) -> List[str]:
        return _split_csv(v)

    @field_validator("extra_ports")
    @classmethod
    def check_extra_ports(cls, v: List[int]) -> List[int]:
        for port in v:
            if not (1 <= port <= 65535):
                raise ValueError(f"Invalid port: {port}")
        return v


class KernelConfig(BaseSettings):
    """sysctl hardening settings."""

    sysctl_path: Path = Field(default=Path("/etc/sysctl.d/99-security-hardening.conf"))
    parameters: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SYSCTL_PARAMETERS)
    )

    model_config = SettingsConfigDict(
        env_prefix="KERNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class Fail2banConfig(BaseSettings):
    """fail2ban jail settings."""

    jail_path: Path = Field(default=Path("/etc/fail2ban/jail.d/sshd-hardening.local"))
    bantime: int = Field(default=3600, ge=60)
    findtime: int = Field(default=600, ge=60)
    maxretry: int = Field(default=3, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="FAIL2BAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class UpdatesConfig(BaseSettings):
    """Automatic security update settings."""

    apt_config_path: Path = Field(default=Path("/etc/apt/apt.conf.d/20auto-upgrades"))
    dnf_config_path: Path = Field(default=Path("/etc/dnf/automatic.conf"))

    model_config = SettingsConfigDict(
        env_prefix="UPDATES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class ServicesConfig(BaseSettings):
    """Units switched off by service minimization."""

    disable: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_DISABLED_UNITS)
    )

    model_config = SettingsConfigDict(
        env_prefix="SERVICES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("disable", mode="before")
    @classmethod
    def parse_disable(cls, v: object) -> List[str]:
        return _split_csv(v)


class KeysConfig(BaseSettings):
    """SSH key generation settings."""

    type: str = Field(default="rsa", pattern=r"^(rsa|ed25519|ecdsa)$")
    bits: int = Field(default=4096, ge=256)

    model_config = SettingsConfigDict(
        env_prefix="KEYS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class BackupConfig(BaseSettings):
    """Backup configuration."""

    directory: Optional[Path] = Field(
        default=None, description="Backup directory; backups sit beside targets if unset"
    )

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class CommandConfig(BaseSettings):
    """Command timeouts in seconds."""

    timeout: int = Field(default=60, ge=1)
    package_timeout: int = Field(default=1800, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="COMMAND_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    file: Optional[Path] = Field(default=None)
    json_format: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class HardenerConfig(BaseSettings):
    """Main configuration container."""

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    firewall: FirewallConfig = Field(default_factory=FirewallConfig)
    kernel: KernelConfig = Field(default_factory=KernelConfig)
    fail2ban: Fail2banConfig = Field(default_factory=Fail2banConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    keys: KeysConfig = Field(default_factory=KeysConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    command: CommandConfig = Field(default_factory=CommandConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def from_env(cls) -> "HardenerConfig":
        """Create configuration from environment variables."""
        return cls(
            ssh=SSHConfig(),
            firewall=FirewallConfig(),
            kernel=KernelConfig(),
            fail2ban=Fail2banConfig(),
            updates=UpdatesConfig(),
            services=ServicesConfig(),
            keys=KeysConfig(),
            backup=BackupConfig(),
            command=CommandConfig(),
            logging=LoggingConfig(),
        )

    def validate_config(self) -> List[str]:
        """Validate configuration and return list of issues."""
        issues: List[str] = []

        if not self.ssh.password_authentication and not self.ssh.pubkey_authentication:
            issues.append("All authentication methods disabled")

        if self.keys.type == "rsa" and self.keys.bits < 2048:
            issues.append(f"RSA keys need at least 2048 bits, got {self.keys.bits}")

        if self.logging.level.upper() not in LOG_LEVELS:
            issues.append(f"Unknown log level: {self.logging.level}")

        for key in self.kernel.parameters:
            if not key or any(c.isspace() for c in key):
                issues.append(f"Invalid sysctl key: {key!r}")

        return issues
