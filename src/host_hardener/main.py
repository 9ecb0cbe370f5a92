"""CLI entry point for Host Hardener."""

import argparse
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

import structlog

from host_hardener import __version__
from host_hardener.config import HardenerConfig
from host_hardener.context import RunContext
from host_hardener.exceptions import ConfigurationError, HardenerError, ValidationError
from host_hardener.gate import AssumeYesGate, InteractionGate, TerminalGate
from host_hardener.log import configure_logging
from host_hardener.orchestrator import HostEnvironment, StepOrchestrator
from host_hardener.report import SummaryReport
from host_hardener.steps import current_ssh_port, default_steps, select_steps
from host_hardener.system_info import SystemInfo
from host_hardener.types import OutcomeStatus
from host_hardener.utils import CommandRunner, FileManager, Validator

logger = structlog.get_logger(__name__)

PORT_ATTEMPTS = 3


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    step_names = ", ".join(s.name for s in default_steps())
    parser = argparse.ArgumentParser(
        description="Host Hardener - transactional security hardening for Debian and Fedora hosts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Interactive run, asking before every step
  sudo host-hardener

  # Unattended run on port 2222, generating a key for 'pi'
  sudo host-hardener --yes --port 2222 --key-user pi

  # See what would happen
  sudo host-hardener --dry-run --yes

Steps: {step_names}

Environment variables (or .env):
  SSH_PORT, SSH_PASSWORD_AUTHENTICATION, SSH_KEY_USERS
  FIREWALL_EXTRA_PORTS, SERVICES_DISABLE, BACKUP_DIRECTORY, LOG_LEVEL ...

See README.md for full documentation.
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Answer yes to every confirmation (unattended run)",
    )

    parser.add_argument(
        "--reboot",
        action="store_true",
        help="With --yes, reboot when finished",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="SSH port to configure (skips the port prompt)",
    )

    parser.add_argument(
        "--generate-keys",
        action="store_true",
        help="Generate an SSH key pair; asks for the user unless --key-user is given",
    )

    parser.add_argument(
        "--key-user",
        type=str,
        help="Generate an SSH key pair for this user (skips the key prompts)",
    )

    parser.add_argument(
        "--skip",
        action="append",
        default=[],
        metavar="STEP",
        help="Skip a step; may be repeated",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate changes without applying them",
    )

    parser.add_argument(
        "--backup-dir",
        type=Path,
        help="Custom backup directory (default: beside each file)",
    )

    parser.add_argument(
        "--report-file",
        type=Path,
        help="Write the summary report as JSON to this file",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        help="Append JSON logs to this file instead of stderr",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-error output",
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> HardenerConfig:
    """Load configuration from the environment and apply CLI overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Configuration object
    """
    config = HardenerConfig.from_env()

    if args.backup_dir:
        config.backup.directory = args.backup_dir

    if args.log_file:
        config.logging.file = args.log_file

    if args.json_logs:
        config.logging.json_format = True

    if args.verbose:
        config.logging.level = "DEBUG"
    elif args.quiet:
        config.logging.level = "WARNING"

    return config


def ask_port(gate: InteractionGate, default: int) -> int:
    """Prompt for the SSH port until a valid one is given.

    Raises:
        ValidationError: After repeated invalid answers
    """
    for _ in range(PORT_ATTEMPTS):
        raw = gate.read_line(
            f"Enter the SSH port you want to use (e.g., 2222). Press Enter for default ({default})",
            default=str(default),
        )
        try:
            return Validator.parse_port(raw, default)
        except ValidationError as e:
            gate.show(f"⚠️  {e}")
    raise ValidationError(f"No valid SSH port after {PORT_ATTEMPTS} attempts")


def check_key_user(user: str) -> None:
    Validator.validate_username(user)
    if not Validator.validate_user_exists(user):
        raise ValidationError(f"User {user!r} does not exist")


def ask_key_user(gate: InteractionGate) -> Optional[str]:
    """Ask whether to generate keys, and for whom. ``None`` means no."""
    if not gate.confirm("Do you need to generate a new SSH key pair for this machine?"):
        return None
    user = gate.read_line("Enter the username to generate keys for (e.g., pi)")
    try:
        check_key_user(user)
    except ValidationError as e:
        gate.show(f"⚠️  {e}. Aborting key generation.")
        return None
    return user


def collect_context(
    gate: InteractionGate,
    config: HardenerConfig,
    args: argparse.Namespace,
    current_port: int = 22,
) -> RunContext:
    """Gather run parameters from flags, or from the operator.

    Raises:
        ValidationError: If a flag value is invalid
    """
    key_user: Optional[str] = None
    if "ssh-keys" not in args.skip:
        if args.key_user:
            check_key_user(args.key_user)
            key_user = args.key_user
        elif args.generate_keys:
            key_user = gate.read_line("Enter the username to generate keys for (e.g., pi)")
            check_key_user(key_user)
        elif not args.yes:
            key_user = ask_key_user(gate)

    if args.port is not None:
        Validator.validate_port(args.port)
        port = args.port
    elif args.yes:
        port = config.ssh.port
    else:
        port = ask_port(gate, config.ssh.port)

    if port != current_port and not Validator.check_port_available(port):
        logger.warning("Port appears to be in use by another service", port=port)

    return RunContext(
        ssh_port=port,
        current_ssh_port=current_port,
        generate_keys=key_user is not None,
        key_user=key_user,
    )


def print_reminders(report: SummaryReport, config: HardenerConfig, ctx: RunContext) -> None:
    ssh = next((e.outcome for e in report.entries if e.name == "ssh"), None)
    if ssh is None or ssh.status != OutcomeStatus.SUCCEEDED:
        return
    print("\n📌 Important Reminders:")
    print(f"  • SSH now runs on port {ctx.ssh_port}")
    print(f"  • Connect with: ssh -p {ctx.ssh_port} <user>@<host>")
    print(
        f"  • Password authentication: {'Enabled' if config.ssh.password_authentication else 'Disabled'}"
    )
    print(f"  • Root login: {'Enabled' if config.ssh.permit_root_login else 'Disabled'}")
    print("  • Test a NEW SSH session before closing this one!")


def write_report(files: FileManager, path: Path, report: SummaryReport) -> None:
    files.atomic_write(path, report.to_json() + "\n", mode=0o600)
    logger.info("Report written", file=str(path))


def write_partial_report(orchestrator: Optional[StepOrchestrator], args: argparse.Namespace) -> None:
    """Show what already ran when the run stops early, and save it if asked."""
    if orchestrator is None or not orchestrator.executed:
        return
    print(orchestrator.report.render(), file=sys.stderr)
    if args.report_file:
        try:
            write_report(FileManager(), args.report_file, orchestrator.report)
        except HardenerError as e:
            logger.error("Report could not be written", file=str(args.report_file), error=str(e))


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for CLI.

    Raises:
        SystemExit: Always exits with appropriate code
    """
    args = parse_args(argv)

    # Basic sanity checks
    if not sys.platform.startswith("linux"):
        print("Error: This tool only supports Linux systems", file=sys.stderr)
        sys.exit(1)

    orchestrator: Optional[StepOrchestrator] = None
    try:
        config = load_config(args)
        configure_logging(config.logging.level, config.logging.file, config.logging.json_format)

        issues = config.validate_config()
        if issues:
            for issue in issues:
                logger.error("Configuration issue", issue=issue)
            raise ConfigurationError(f"Invalid configuration: {'; '.join(issues)}")

        runner = CommandRunner(default_timeout=config.command.timeout, dry_run=args.dry_run)
        files = FileManager(dry_run=args.dry_run)
        gate: InteractionGate = AssumeYesGate() if args.yes else TerminalGate()
        system = SystemInfo(runner)
        logger.info("Detected system", **system.to_dict())
        for issue in system.check_requirements(config.ssh.config_path):
            logger.warning("System requirement not met", issue=issue)

        env = HostEnvironment(runner, files, gate, system, config)
        orchestrator = StepOrchestrator(select_steps(default_steps(), args.skip), env)
        orchestrator.check_privilege()

        # Display header
        if not args.quiet:
            print("╔══════════════════════════════════════╗")
            print("║  HOST HARDENER                       ║")
            print(f"║  Version {__version__:<28}║")
            print("╚══════════════════════════════════════╝\n")

            if args.dry_run:
                print("🔍 DRY RUN MODE - No changes will be applied\n")

        print("⚠️  WARNING: This will reconfigure the firewall and the SSH daemon.")
        print("   Keep this session open and test a new login before disconnecting.\n")
        if not gate.confirm("Do you want to continue?"):
            print("Aborting. No changes were made.")
            sys.exit(0)

        ctx = collect_context(gate, config, args, current_ssh_port(env))
        report = orchestrator.run(ctx)

        print("\n" + report.render())
        if args.report_file:
            write_report(FileManager(), args.report_file, report)

        if report.aborted:
            sys.exit(1)

        if not args.quiet:
            print_reminders(report, config, ctx)

        print("\n🔁 A REBOOT IS REQUIRED for all changes to take effect.")
        reboot = args.reboot if args.yes else gate.confirm("Reboot now?")
        if reboot:
            runner.run(["systemctl", "reboot"])
        else:
            print("Please reboot the system manually by typing 'sudo reboot'.")

        sys.exit(0)

    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted by user", file=sys.stderr)
        write_partial_report(orchestrator, args)
        sys.exit(130)

    except HardenerError as e:
        print(f"\n❌ Error: {e}", file=sys.stderr)
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Unexpected error: {e}", file=sys.stderr)
        write_partial_report(orchestrator, args)
        if args.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
