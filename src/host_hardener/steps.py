"""The hardening steps and their default order.

Each step is a plain function ``(env, ctx) -> StepOutcome``. Steps that
change configuration files go through :func:`apply_config`, which wraps a
``ConfigTransaction`` and translates its errors into outcomes.
"""

import grp
import pwd
import shlex
import socket
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from host_hardener.context import RunContext
from host_hardener.exceptions import (
    ConfigurationError,
    ExecutionError,
    FileIOError,
    FormatError,
    OperationTimeout,
    RollbackError,
    ValidationRejected,
)
from host_hardener.orchestrator import HostEnvironment, Step
from host_hardener.transaction import (
    MATCH_BLOCK,
    CommandValidator,
    ConfigTransaction,
    ConfigValidator,
    SshdValidator,
    Transform,
    read_directive,
    replace_content,
    replace_directives,
    substitute,
)
from host_hardener.types import CommandResult, Criticality, PackageManager, StepOutcome
from host_hardener.utils.validation import Validator

logger = structlog.get_logger(__name__)

MANAGED_NOTE = "Managed by host-hardener; local changes are overwritten on the next run"


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


def safe_run(env: HostEnvironment, argv: Sequence[str], timeout: Optional[int] = None) -> CommandResult:
    """Run a command, folding launch failures and timeouts into the result."""
    try:
        return env.runner.run(argv, timeout=timeout)
    except (ExecutionError, OperationTimeout) as e:
        return CommandResult(False, "", str(e), -1)


def run_commands(
    env: HostEnvironment, commands: Iterable[Sequence[str]], timeout: Optional[int] = None
) -> Optional[StepOutcome]:
    """Run commands in order and stop at the first failure.

    Returns:
        ``None`` if all succeeded, otherwise a ``FailedFatal`` outcome naming
        the failing command
    """
    for argv in commands:
        result = safe_run(env, argv, timeout)
        if not result.success:
            detail = _last_line(result.stderr) or _last_line(result.stdout)
            return StepOutcome.failed_fatal(
                f"exit {result.return_code}: {detail}" if detail else f"exit {result.return_code}",
                subject=shlex.join(argv),
            )
    return None


def package_step(env: HostEnvironment, actions: Sequence[str], packages: Sequence[str] = ()) -> Optional[StepOutcome]:
    """Run package manager actions with the long package timeout."""
    timeout = env.config.command.package_timeout
    for action in actions:
        argv, extra_env = env.system.package_command(action, packages if action == "install" else ())
        try:
            result = env.runner.run(argv, timeout=timeout, env=extra_env)
        except OperationTimeout as e:
            return StepOutcome.failed_fatal(str(e), subject=shlex.join(argv))
        if not result.success:
            return StepOutcome.failed_fatal(
                f"exit {result.return_code}: {_last_line(result.stderr)}",
                subject=shlex.join(argv),
            )
    return None


def ensure_installed(env: HostEnvironment, command: str, package: str) -> Optional[StepOutcome]:
    if env.runner.available(command):
        return None
    logger.info("installing package", package=package)
    return package_step(env, ["install"], [package])


def apply_config(
    env: HostEnvironment,
    path: Path,
    transform: Transform,
    validator: Optional[ConfigValidator] = None,
    missing_ok: bool = False,
    activate: Optional[Callable[[], CommandResult]] = None,
    reactivate_on_rollback: bool = False,
    done: str = "",
) -> StepOutcome:
    """Rewrite ``path`` transactionally and optionally activate the result.

    The file is backed up, rewritten, swapped in and validated. If
    ``activate`` (e.g. a service restart) fails, the original file is put
    back and, with ``reactivate_on_rollback``, activated again.

    Returns:
        ``Succeeded`` with ``done``, ``RolledBack`` when the new content was
        rejected or could not be activated, ``FailedFatal`` otherwise. A
        failed restore sets ``rollback_failed``.
    """
    subject = str(path)
    try:
        tx = ConfigTransaction.open(
            path, env.files, backup_dir=env.config.backup.directory, missing_ok=missing_ok
        )
    except FileIOError as e:
        return StepOutcome.failed_fatal(f"cannot read or back up file: {e.cause}", subject)

    with tx:
        try:
            tx.rewrite(transform)
            tx.validate(validator)
        except FormatError as e:
            tx.rollback()
            return StepOutcome.failed_fatal(f"cannot rewrite file: {e}", subject)
        except ValidationRejected as e:
            command = e.report.command or "validator"
            return StepOutcome.rolled_back(
                f"rejected by '{command}': {_last_line(e.report.diagnostics)}", subject
            )
        except RollbackError as e:
            return StepOutcome.failed_fatal(str(e), subject, rollback_failed=True)
        except FileIOError as e:
            return StepOutcome.failed_fatal(f"cannot write file: {e.cause}", subject)

        if activate is not None:
            result = activate()
            if not result.success:
                reason = _last_line(result.stderr) or f"exit {result.return_code}"
                if tx.committed:
                    return StepOutcome.failed_fatal(
                        f"activation failed, new file kept: {reason}", subject
                    )
                logger.error("activation failed, restoring backup", file=subject, error=reason)
                try:
                    tx.rollback()
                except RollbackError as e:
                    return StepOutcome.failed_fatal(str(e), subject, rollback_failed=True)
                if reactivate_on_rollback:
                    again = activate()
                    if not again.success:
                        return StepOutcome.failed_fatal(
                            "service failed with both new and original configuration: "
                            f"{_last_line(again.stderr) or again.return_code}",
                            subject,
                            rollback_failed=True,
                        )
                return StepOutcome.rolled_back(f"activation failed: {reason}", subject)

        tx.commit()

    return StepOutcome.succeeded(done, subject)


def current_ssh_port(env: HostEnvironment) -> int:
    """Port sshd is configured with now, 22 if unset or unreadable."""
    try:
        content = env.files.read_text(env.config.ssh.config_path)
    except FileIOError:
        return 22
    value = read_directive(content.splitlines(), "Port")
    if value and value.isdigit() and 1 <= int(value) <= 65535:
        return int(value)
    return 22


# --- 1. System update ---------------------------------------------------------


def update_system(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    failed = package_step(env, ["refresh", "upgrade"])
    return failed or StepOutcome.succeeded("system packages are up to date")


# --- 2. SSH key generation ----------------------------------------------------


def generate_ssh_keys(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    """Create a key pair for ``ctx.key_user`` and authorize it for login.

    The private key is shown once through the gate so the operator can copy
    it off the machine; it never goes to the logs.
    """
    if not ctx.generate_keys or not ctx.key_user:
        return StepOutcome.skipped("key generation not requested")

    user = ctx.key_user
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        return StepOutcome.failed_fatal(f"user {user!r} does not exist")
    group = grp.getgrgid(entry.pw_gid).gr_name

    key_type = env.config.keys.type
    ssh_dir = Path(entry.pw_dir) / ".ssh"
    private_key = ssh_dir / f"id_{key_type}"
    public_key = ssh_dir / f"id_{key_type}.pub"
    auth_keys = ssh_dir / "authorized_keys"

    if env.files.exists(private_key):
        return StepOutcome.skipped("key already exists, not overwriting", str(private_key))
    if env.files.dry_run:
        return StepOutcome.skipped("dry run", str(private_key))

    env.files.make_dir(ssh_dir, mode=0o700)

    argv = ["ssh-keygen", "-q", "-t", key_type]
    if key_type != "ed25519":
        argv += ["-b", str(env.config.keys.bits)]
    argv += ["-f", str(private_key), "-N", "", "-C", f"{user}@{socket.gethostname()}"]
    failed = run_commands(env, [argv])
    if failed:
        return failed

    public = env.files.read_text(public_key).strip()
    existing = env.files.read_text(auth_keys) if env.files.exists(auth_keys) else ""
    if public not in existing.splitlines():
        prefix = "\n" if existing and not existing.endswith("\n") else ""
        env.files.append_text(auth_keys, f"{prefix}{public}\n", mode=0o600)

    env.files.set_mode(ssh_dir, 0o700)
    env.files.set_mode(auth_keys, 0o600)
    env.files.set_mode(private_key, 0o600)
    for path in (ssh_dir, auth_keys, private_key, public_key):
        env.files.set_owner(path, user, group)

    env.gate.show(
        "!!!!!!!!!!!!!!!!!!!!!!!! CRITICAL ACTION REQUIRED !!!!!!!!!!!!!!!!!!!!!!!!\n"
        "Your NEW PRIVATE KEY is displayed below. Copy the ENTIRE key and save it\n"
        "to a file on your computer. You will need it to log in.\n"
    )
    env.gate.show(env.files.read_text(private_key))
    env.gate.read_line("Press Enter ONLY after you have securely copied the private key")

    return StepOutcome.succeeded(f"{key_type} key generated for {user}", str(private_key))


# --- 3. Firewall ----------------------------------------------------------


def configure_firewall(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    """Reset UFW to deny-incoming and open SSH, HTTPS and configured ports.

    ``ufw --force reset`` leaves the firewall disabled, and enabling is the
    last command, so a failure part-way never leaves a half-built ruleset
    active.
    """
    failed = ensure_installed(env, "ufw", "ufw")
    if failed:
        return failed

    fw = env.config.firewall
    ssh_rule = f"{ctx.ssh_port}/tcp"
    commands: List[List[str]] = [
        ["ufw", "--force", "reset"],
        ["ufw", "default", "deny", "incoming"],
        ["ufw", "default", "allow", "outgoing"],
        ["ufw", "limit" if fw.rate_limit_ssh else "allow", ssh_rule],
    ]
    if fw.keep_current_ssh_port and ctx.port_changes:
        commands.append(["ufw", "allow", f"{ctx.current_ssh_port}/tcp"])
    if fw.allow_https:
        commands.append(["ufw", "allow", "https"])
    for port in fw.extra_ports:
        commands.append(["ufw", "allow", f"{port}/tcp"])
    commands.append(["ufw", "--force", "enable"])

    failed = run_commands(env, commands)
    if failed:
        return failed

    status = safe_run(env, ["ufw", "status", "verbose"])
    logger.info("ufw status", status=status.stdout.strip())

    opened = [ssh_rule] + (["443/tcp"] if fw.allow_https else [])
    return StepOutcome.succeeded(f"UFW enabled, allowing {', '.join(opened)}")


# --- 4. SSH daemon --------------------------------------------------------


def ssh_directives(env: HostEnvironment, port: int) -> List[Tuple[str, str]]:
    cfg = env.config.ssh
    return [
        ("Port", str(port)),
        ("PermitRootLogin", _yes_no(cfg.permit_root_login)),
        ("PasswordAuthentication", _yes_no(cfg.password_authentication)),
        ("PubkeyAuthentication", _yes_no(cfg.pubkey_authentication)),
        ("ChallengeResponseAuthentication", "no"),
        ("KbdInteractiveAuthentication", "no"),
        ("UsePAM", _yes_no(cfg.use_pam)),
    ]


def harden_ssh(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    """Rewrite sshd_config, validate it with sshd and restart the daemon."""
    cfg = env.config.ssh
    subject = str(cfg.config_path)

    if not cfg.password_authentication and cfg.require_authorized_keys:
        users = Validator.users_with_keys(cfg.key_users or None)
        if not users:
            return StepOutcome.failed_fatal(
                "no non-root account has an authorized SSH key; "
                "disabling password login would lock you out",
                subject,
            )
        logger.info("accounts with SSH keys", users=users)

    service = env.system.ssh_service_name(cfg.service_name)
    if service is None:
        return StepOutcome.failed_fatal("SSH service unit not found", subject)

    binary = env.system.find_binary(cfg.sshd_binary) or cfg.sshd_binary
    expected: Optional[Dict[str, str]] = None
    if cfg.verify_effective and not env.runner.dry_run:
        expected = {key.lower(): value for key, value in ssh_directives(env, ctx.ssh_port)[:4]}

    return apply_config(
        env,
        cfg.config_path,
        replace_directives(ssh_directives(env, ctx.ssh_port), anchor=MATCH_BLOCK),
        validator=SshdValidator(env.runner, binary, expected),
        activate=lambda: safe_run(env, ["systemctl", "restart", service]),
        reactivate_on_rollback=True,
        done=f"SSH hardened on port {ctx.ssh_port}, password login "
        f"{'enabled' if cfg.password_authentication else 'disabled'}",
    )


# --- 5. Kernel parameters -------------------------------------------------


def harden_kernel(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    """Write the sysctl drop-in and apply it.

    ``sysctl -p`` doubles as the validator, so a file the kernel rejects is
    rolled back. Values it accepted before failing stay live until reboot.
    """
    kernel = env.config.kernel
    if not kernel.parameters:
        return StepOutcome.skipped("no kernel parameters configured")

    return apply_config(
        env,
        kernel.sysctl_path,
        replace_directives(list(kernel.parameters.items()), separator=" = "),
        validator=CommandValidator(env.runner, ["sysctl", "-p", "{path}"]),
        missing_ok=True,
        done=f"{len(kernel.parameters)} kernel parameters hardened",
    )


# --- 6. Fail2ban ----------------------------------------------------------


def jail_lines(env: HostEnvironment, port: int) -> List[str]:
    f2b = env.config.fail2ban
    return [
        f"# {MANAGED_NOTE}",
        "[sshd]",
        "enabled = true",
        f"port = {port}",
        f"bantime = {f2b.bantime}",
        f"findtime = {f2b.findtime}",
        f"maxretry = {f2b.maxretry}",
    ]


def setup_fail2ban(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    failed = ensure_installed(env, "fail2ban-client", "fail2ban")
    if failed:
        return failed

    validator = None
    if env.runner.available("fail2ban-client"):
        validator = CommandValidator(env.runner, ["fail2ban-client", "-t"])

    outcome = apply_config(
        env,
        env.config.fail2ban.jail_path,
        replace_content(jail_lines(env, ctx.ssh_port)),
        validator=validator,
        missing_ok=True,
        activate=lambda: safe_run(env, ["systemctl", "restart", "fail2ban"]),
        done=f"fail2ban protecting sshd on port {ctx.ssh_port}",
    )
    if outcome.is_failure:
        return outcome

    return run_commands(env, [["systemctl", "enable", "fail2ban"]]) or outcome


# --- 7. Automatic security updates ----------------------------------------


APT_AUTO_UPGRADES = [
    f"// {MANAGED_NOTE}",
    'APT::Periodic::Update-Package-Lists "1";',
    'APT::Periodic::Unattended-Upgrade "1";',
    'APT::Periodic::AutocleanInterval "7";',
]


def configure_auto_updates(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    updates = env.config.updates
    manager = env.system.package_manager

    if manager == PackageManager.APT:
        failed = package_step(env, ["install"], ["unattended-upgrades"])
        if failed:
            return failed
        outcome = apply_config(
            env,
            updates.apt_config_path,
            replace_content(APT_AUTO_UPGRADES),
            validator=CommandValidator(env.runner, ["apt-config", "dump"]),
            missing_ok=True,
            done="unattended-upgrades configured",
        )
        unit = "unattended-upgrades"
    elif manager == PackageManager.DNF:
        failed = package_step(env, ["install"], ["dnf-automatic"])
        if failed:
            return failed
        outcome = apply_config(
            env,
            updates.dnf_config_path,
            substitute(r"^\s*apply_updates\s*=", "apply_updates = yes"),
            done="dnf-automatic configured",
        )
        unit = "dnf-automatic.timer"
    else:
        return StepOutcome.skipped("no supported package manager")

    if outcome.is_failure:
        return outcome
    return run_commands(env, [["systemctl", "enable", "--now", unit]]) or outcome


# --- 8. Service minimization ----------------------------------------------


def minimize_services(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    units = env.config.services.disable
    present = [unit for unit in units if env.system.unit_installed(unit)]
    if not present:
        return StepOutcome.skipped("none of the configured units are installed")

    failures = []
    for unit in present:
        result = safe_run(env, ["systemctl", "disable", "--now", unit])
        if not result.success:
            failures.append(f"{unit}: {_last_line(result.stderr) or result.return_code}")

    if failures:
        return StepOutcome.failed_fatal("; ".join(failures), subject="systemctl disable --now")
    return StepOutcome.succeeded(f"disabled {', '.join(present)}")


# --- 9. Cleanup -----------------------------------------------------------


def cleanup(env: HostEnvironment, ctx: RunContext) -> StepOutcome:
    failed = package_step(env, ["autoremove", "clean"])
    return failed or StepOutcome.succeeded("unused packages removed")


def default_steps() -> List[Step]:
    """The hardening steps in their fixed order.

    Updates come first so later steps act on a patched base. The firewall
    and SSH precede everything else that touches services, and cleanup runs
    last, even after an abort.
    """
    return [
        Step(
            "update",
            1,
            update_system,
            Criticality.RECOVERABLE,
            requires_confirmation=True,
            confirm_prompt="[1/9] Update and upgrade system packages?",
            title="System Update & Upgrade",
        ),
        Step(
            "ssh-keys",
            2,
            generate_ssh_keys,
            Criticality.RECOVERABLE,
            title="SSH Key Generation (Optional)",
        ),
        Step(
            "firewall",
            3,
            configure_firewall,
            Criticality.FATAL,
            requires_confirmation=True,
            confirm_prompt="[3/9] Reset and enable the UFW firewall?",
            title="Configure Firewall (UFW)",
        ),
        Step(
            "ssh",
            4,
            harden_ssh,
            Criticality.FATAL,
            requires_confirmation=True,
            confirm_prompt="[4/9] Harden sshd_config and restart SSH (disables password and root login)?",
            title="Harden SSH Configuration",
        ),
        Step(
            "kernel",
            5,
            harden_kernel,
            Criticality.RECOVERABLE,
            requires_confirmation=True,
            confirm_prompt="[5/9] Harden kernel network parameters?",
            title="Harden Kernel Parameters",
        ),
        Step(
            "fail2ban",
            6,
            setup_fail2ban,
            Criticality.RECOVERABLE,
            requires_confirmation=True,
            confirm_prompt="[6/9] Install and enable Fail2ban?",
            title="Install Fail2ban",
        ),
        Step(
            "auto-updates",
            7,
            configure_auto_updates,
            Criticality.BEST_EFFORT,
            requires_confirmation=True,
            confirm_prompt="[7/9] Enable automatic security updates?",
            title="Set Up Automatic Security Updates",
        ),
        Step(
            "services",
            8,
            minimize_services,
            Criticality.BEST_EFFORT,
            requires_confirmation=True,
            confirm_prompt="[8/9] Disable non-essential services (Bluetooth, Avahi)?",
            title="Minimize Running Services",
        ),
        Step(
            "cleanup",
            9,
            cleanup,
            Criticality.BEST_EFFORT,
            requires_confirmation=True,
            confirm_prompt="[9/9] Remove unused packages and clean the package cache?",
            always_run=True,
            title="System Cleanup",
        ),
    ]


def select_steps(steps: Sequence[Step], skip: Iterable[str] = ()) -> List[Step]:
    """Drop the named steps.

    Raises:
        ConfigurationError: If a name does not match any step
    """
    skip = set(skip)
    unknown = skip - {s.name for s in steps}
    if unknown:
        raise ConfigurationError(f"Unknown step(s): {', '.join(sorted(unknown))}")
    return [s for s in steps if s.name not in skip]
