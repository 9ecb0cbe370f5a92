"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Callable, Dict, List, Sequence, Tuple, Union

import pytest

from host_hardener.config import HardenerConfig
from host_hardener.context import RunContext
from host_hardener.gate import ScriptedGate
from host_hardener.orchestrator import HostEnvironment
from host_hardener.system_info import SystemInfo
from host_hardener.types import CommandResult
from host_hardener.utils.command import CommandRunner
from host_hardener.utils.file import FileManager
from host_hardener.utils.validation import Validator

Scripted = Union[CommandResult, Exception, Callable[[List[str]], CommandResult]]

OK = CommandResult(True, "", "", 0)


def fail(stderr: str = "error", code: int = 1) -> CommandResult:
    return CommandResult(False, "", stderr, code)


class FakeRunner(CommandRunner):
    """Records every command and answers from scripted results.

    Results are keyed by an argv prefix; the program is compared by basename
    so ``/usr/sbin/sshd`` matches ``sshd``. A list of results is consumed one
    per call, the last one repeating. Unmatched commands succeed.
    """

    def __init__(self, available: Sequence[str] = (), dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.calls: List[List[str]] = []
        self.available_commands = set(available)
        self._results: Dict[Tuple[str, ...], List[Scripted]] = {}

    def script(self, prefix: Sequence[str], *results: Scripted) -> None:
        self._results[tuple(prefix)] = list(results)

    def run(self, argv, timeout=None, env=None, input_text=None, read_only=False) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        key = [Path(argv[0]).name] + argv[1:]
        for prefix in sorted(self._results, key=len, reverse=True):
            if tuple(key[: len(prefix)]) == prefix:
                queue = self._results[prefix]
                result = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(argv)
                return result
        return OK

    def available(self, command: str) -> bool:
        return command in self.available_commands

    def called(self, *prefix: str) -> List[List[str]]:
        """Calls whose argv starts with ``prefix`` (program by basename)."""
        return [
            c for c in self.calls if ([Path(c[0]).name] + c[1:])[: len(prefix)] == list(prefix)
        ]


class SpyFileManager(FileManager):
    """FileManager that records every mutating call."""

    def __init__(self, dry_run: bool = False) -> None:
        super().__init__(dry_run=dry_run)
        self.mutations: List[Tuple[str, str]] = []

    def atomic_write(self, filepath, content, mode=None, uid=None, gid=None) -> None:
        self.mutations.append(("write", str(filepath)))
        super().atomic_write(filepath, content, mode=mode, uid=uid, gid=gid)

    def remove(self, filepath) -> None:
        self.mutations.append(("remove", str(filepath)))
        super().remove(filepath)

    def make_dir(self, dirpath, mode=0o755) -> None:
        self.mutations.append(("mkdir", str(dirpath)))
        super().make_dir(dirpath, mode)

    def set_mode(self, filepath, mode) -> None:
        self.mutations.append(("chmod", str(filepath)))
        super().set_mode(filepath, mode)

    def set_owner(self, filepath, user, group=None) -> None:
        self.mutations.append(("chown", str(filepath)))
        super().set_owner(filepath, user, group)

    def append_text(self, filepath, content, mode=0o600) -> None:
        self.mutations.append(("append", str(filepath)))
        super().append_text(filepath, content, mode)


SSHD_CONFIG = """\
# This is the sshd server system-wide configuration file.
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#PermitRootLogin prohibit-password
PasswordAuthentication yes
KbdInteractiveAuthentication no
UsePAM yes

X11Forwarding yes
Subsystem sftp /usr/lib/openssh/sftp-server
"""


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner(available=["apt-get", "systemctl", "ufw"])


@pytest.fixture
def files() -> SpyFileManager:
    return SpyFileManager()


@pytest.fixture
def gate() -> ScriptedGate:
    return ScriptedGate.assume_yes()


@pytest.fixture
def sshd_config(tmp_path: Path) -> Path:
    path = tmp_path / "sshd_config"
    path.write_text(SSHD_CONFIG)
    return path


@pytest.fixture
def test_config(tmp_path: Path, sshd_config: Path) -> HardenerConfig:
    """Create test configuration pointing every file into tmp_path."""
    config = HardenerConfig.from_env()
    config.ssh.config_path = sshd_config
    config.ssh.service_name = "ssh"
    config.kernel.sysctl_path = tmp_path / "99-security-hardening.conf"
    config.fail2ban.jail_path = tmp_path / "sshd-hardening.local"
    config.updates.apt_config_path = tmp_path / "20auto-upgrades"
    config.updates.dnf_config_path = tmp_path / "automatic.conf"
    config.backup.directory = None
    return config


@pytest.fixture
def os_release(tmp_path: Path) -> Path:
    path = tmp_path / "os-release"
    path.write_text('PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\nID=debian\n')
    return path


@pytest.fixture
def env(
    runner: FakeRunner,
    files: SpyFileManager,
    gate: ScriptedGate,
    test_config: HardenerConfig,
    os_release: Path,
) -> HostEnvironment:
    system = SystemInfo(runner, os_release=os_release)
    return HostEnvironment(runner, files, gate, system, test_config)


@pytest.fixture
def ctx() -> RunContext:
    return RunContext(ssh_port=2222, current_ssh_port=22)


@pytest.fixture
def keys_present(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pretend a regular account has an authorized key."""
    monkeypatch.setattr(
        Validator, "users_with_keys", staticmethod(lambda candidates=None, min_uid=1000: ["admin"])
    )


@pytest.fixture
def temp_backup_dir(tmp_path: Path) -> Path:
    """Create temporary backup directory."""
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    return backup_dir
