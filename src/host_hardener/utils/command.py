"""Command execution utilities."""

import os
import shlex
import shutil
import subprocess
from typing import Mapping, Optional, Sequence

import structlog

from host_hardener.exceptions import ExecutionError, OperationTimeout
from host_hardener.types import CommandResult

logger = structlog.get_logger(__name__)


class CommandRunner:
    """Execute system commands with proper error handling.

    A non-zero exit status is returned in the result, never raised, so the
    caller decides how much a failure matters.
    """

    def __init__(self, default_timeout: int = 60, dry_run: bool = False) -> None:
        """Initialize command runner.

        Args:
            default_timeout: Timeout in seconds used when a call gives none
            dry_run: If True, only log commands without executing
        """
        self.default_timeout = default_timeout
        self.dry_run = dry_run

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[int] = None,
        env: Optional[Mapping[str, str]] = None,
        input_text: Optional[str] = None,
        read_only: bool = False,
    ) -> CommandResult:
        """Run a command without a shell.

        Args:
            argv: Program and arguments
            timeout: Timeout in seconds, defaults to ``default_timeout``
            env: Extra environment variables merged over the current ones
            input_text: Text passed to the command on stdin
            read_only: The command only queries state, so it runs even in a
                dry run

        Returns:
            CommandResult with execution details

        Raises:
            ExecutionError: If the executable cannot be located or launched
            OperationTimeout: If the command exceeds its timeout
        """
        if not argv:
            raise ExecutionError("Empty command")

        cmd = shlex.join(argv)
        if timeout is None:
            timeout = self.default_timeout

        if self.dry_run and not read_only:
            logger.info("dry run", command=cmd)
            return CommandResult(True, f"[DRY RUN] {cmd}", "", 0)

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug("running command", command=cmd, timeout=timeout)
        try:
            result = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=full_env,
                input=input_text,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationTimeout(f"Command timed out after {timeout}s: {cmd}") from e
        except OSError as e:
            raise ExecutionError(f"Command could not be launched: {cmd}\nError: {e}") from e

        cmd_result = CommandResult(
            success=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            return_code=result.returncode,
        )
        if not cmd_result.success:
            logger.debug(
                "command exited non-zero",
                command=cmd,
                return_code=result.returncode,
                stderr=result.stderr.strip()[:200],
            )
        return cmd_result

    def available(self, command: str) -> bool:
        """Check if command is available on system."""
        return shutil.which(command) is not None
