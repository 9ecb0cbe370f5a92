"""Transactional rewrite of a single configuration file.

A ``ConfigTransaction`` snapshots a file, rewrites an in-memory copy, swaps
the new content in with an atomic rename, validates it in place and either
commits or restores the snapshot. At any moment the target holds either the
original bytes or the complete new content, never a partial write.

Typical use::

    tx = ConfigTransaction.open(Path("/etc/ssh/sshd_config"), files)
    tx.rewrite(replace_directives([("Port", "2222")], anchor=MATCH_BLOCK))
    tx.validate(SshdValidator(runner))   # raises ValidationRejected after rollback
    tx.commit()
"""

import difflib
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Tuple, Union

import structlog

from host_hardener.exceptions import (
    ExecutionError,
    FileIOError,
    FormatError,
    OperationTimeout,
    RollbackError,
    TransactionStateError,
    ValidationRejected,
)
from host_hardener.types import TransactionState, ValidationReport
from host_hardener.utils.command import CommandRunner
from host_hardener.utils.file import ENCODING, ERRORS, FileManager

logger = structlog.get_logger(__name__)

Transform = Callable[[List[str]], List[str]]

MANAGED_HEADER = "# --- Hardening Script Settings (Applied by host-hardener) ---"
MANAGED_FOOTER = "# --- End of Hardening Script Settings ---"

# sshd rejects global keywords that follow a Match block.
MATCH_BLOCK = r"^\s*Match\s"


def backup_path_for(target: Path, backup_dir: Optional[Path] = None) -> Path:
    """Derive the backup location for ``target``.

    Without a backup directory the backup sits beside the target as
    ``<name>.bak``; otherwise the full target path is flattened into the
    directory so that different targets never collide.
    """
    if backup_dir is None:
        return target.with_name(target.name + ".bak")
    flat = str(target.resolve()).strip("/").replace("/", "__")
    return backup_dir / f"{flat}.bak"


def key_pattern(key: str) -> Pattern[str]:
    """Match a directive line for ``key``, active or commented out.

    Leading whitespace, an optional ``#`` and whitespace or ``=`` after the
    key are tolerated. Matching is case-insensitive, like sshd keywords.
    """
    if not key or not key.strip() or any(c.isspace() for c in key):
        raise FormatError(f"Invalid directive key: {key!r}")
    return re.compile(rf"^\s*#?\s*{re.escape(key)}(?=\s|=|$)", re.IGNORECASE)


def read_directive(lines: Sequence[str], key: str) -> Optional[str]:
    """Return the value of the first active ``key`` line, if any."""
    pattern = re.compile(rf"^\s*{re.escape(key)}(?:\s*=\s*|\s+)(\S+)", re.IGNORECASE)
    for line in lines:
        match = pattern.match(line)
        if match:
            return match.group(1)
    return None


def _strip_trailing_blank(lines: List[str]) -> List[str]:
    end = len(lines)
    while end and not lines[end - 1].strip():
        end -= 1
    return lines[:end]


def replace_directives(
    directives: Sequence[Tuple[str, str]],
    extra_keys: Sequence[str] = (),
    separator: str = " ",
    anchor: Optional[str] = None,
    header: str = MANAGED_HEADER,
    footer: str = MANAGED_FOOTER,
) -> Transform:
    """Build a transform that makes ``directives`` authoritative.

    The transform drops a previously applied managed block, drops every line
    (active or commented) setting one of the directive keys or
    ``extra_keys``, then adds a fresh managed block. The block is appended,
    or inserted before the first line matching ``anchor``. Applying the
    transform twice gives the same result as applying it once. Lines from the
    anchor onwards are left alone: they belong to the anchored section, such
    as an sshd ``Match`` block.

    Args:
        directives: ``(key, value)`` pairs, written in order
        extra_keys: Further keys to remove without replacement
        separator: Text between key and value
        anchor: Regex; the block goes before the first matching line
        header: First line of the managed block
        footer: Last line of the managed block

    Returns:
        A pure ``List[str] -> List[str]`` function
    """
    directives = list(directives)
    keys = [key for key, _ in directives] + list(extra_keys)

    def transform(lines: List[str]) -> List[str]:
        patterns = [key_pattern(key) for key in keys]
        try:
            anchor_re = re.compile(anchor) if anchor else None
        except re.error as e:
            raise FormatError(f"Invalid anchor pattern {anchor!r}: {e}") from e

        kept: List[str] = []
        in_block = False
        position: Optional[int] = None
        for line in lines:
            if position is None:
                stripped = line.strip()
                if stripped == header:
                    in_block = True
                    continue
                if in_block:
                    if stripped == footer:
                        in_block = False
                    continue
                if anchor_re is not None and anchor_re.match(line):
                    position = len(kept)
                elif any(p.match(line) for p in patterns):
                    continue
            kept.append(line)

        if in_block:
            raise FormatError("Managed block has no end marker; refusing to guess its extent")
        if position is None:
            position = len(kept)

        block = [header] + [f"{key}{separator}{value}" for key, value in directives] + [footer]

        before = _strip_trailing_blank(kept[:position])
        after = kept[position:]
        result = before + [""] + block if before else list(block)
        if after:
            result += [""] + after
        return result

    return transform


def substitute(pattern: str, replacement: str, required: bool = True) -> Transform:
    """Build a transform replacing whole lines that match ``pattern``.

    Raises ``FormatError`` from the transform when ``required`` and no line
    matches, so a setting that is expected to exist is never silently missed.
    """

    def transform(lines: List[str]) -> List[str]:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise FormatError(f"Invalid pattern {pattern!r}: {e}") from e
        result = [replacement if regex.match(line) else line for line in lines]
        if required and not any(regex.match(line) for line in lines):
            raise FormatError(f"No line matches {pattern!r}")
        return result

    return transform


def replace_content(new_lines: Sequence[str]) -> Transform:
    """Build a transform that replaces the whole file."""
    snapshot = list(new_lines)

    def transform(lines: List[str]) -> List[str]:
        return list(snapshot)

    return transform


class ConfigValidator(ABC):
    """External check over a file that has just been written."""

    @abstractmethod
    def check(self, path: Path) -> ValidationReport:
        """Return the verdict for ``path``."""


class CommandValidator(ConfigValidator):
    """Validator running a command; exit status 0 means the file is valid.

    ``{path}`` in any argument is replaced with the file being checked.
    """

    def __init__(
        self, runner: CommandRunner, argv: Sequence[str], timeout: Optional[int] = None
    ) -> None:
        self.runner = runner
        self.argv = list(argv)
        self.timeout = timeout

    def check(self, path: Path) -> ValidationReport:
        argv = [arg.replace("{path}", str(path)) for arg in self.argv]
        result = self.runner.run(argv, timeout=self.timeout)
        diagnostics = (result.stderr or result.stdout).strip()
        return ValidationReport(result.success, diagnostics, shlex.join(argv))


def parse_effective_config(output: str) -> Dict[str, List[str]]:
    """Parse ``sshd -T`` output into lowercase keys and values."""
    effective: Dict[str, List[str]] = {}
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        effective.setdefault(parts[0].lower(), []).append(parts[1].strip().lower())
    return effective


class SshdValidator(ConfigValidator):
    """sshd's own syntax test, optionally followed by an effective-settings check.

    The syntax test is ``sshd -t -f <file>``. When ``expected`` is given,
    ``sshd -T -f <file>`` is run as well and every expected keyword must
    appear with the expected value. That catches an ``Include``d drop-in
    silently overriding the new settings.
    """

    def __init__(
        self,
        runner: CommandRunner,
        binary: str = "sshd",
        expected: Optional[Mapping[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.runner = runner
        self.binary = binary
        self.expected = dict(expected or {})
        self.timeout = timeout

    def check(self, path: Path) -> ValidationReport:
        syntax = CommandValidator(
            self.runner, [self.binary, "-t", "-f", "{path}"], self.timeout
        ).check(path)
        if not syntax.passed or not self.expected:
            return syntax

        argv = [self.binary, "-T", "-f", str(path)]
        result = self.runner.run(argv, timeout=self.timeout)
        cmd = shlex.join(argv)
        if not result.success:
            return ValidationReport(False, result.stderr.strip(), cmd)

        effective = parse_effective_config(result.stdout)
        mismatches = []
        for key, value in self.expected.items():
            actual = effective.get(key.lower(), [])
            if str(value).lower() not in actual:
                shown = ", ".join(actual) if actual else "unset"
                mismatches.append(f"{key} is {shown}, expected {value}")

        if mismatches:
            return ValidationReport(False, "; ".join(mismatches), cmd)
        return ValidationReport(True, syntax.diagnostics, cmd)


class ConfigTransaction:
    """Snapshot, rewrite, validate and commit or roll back one file.

    Instances are created with :meth:`open` and owned by a single step.
    ``committed`` and ``rolled_back`` are never both true.
    """

    def __init__(
        self,
        target: Path,
        backup_path: Path,
        files: FileManager,
        original: str,
        existed: bool,
        mode: int = 0o644,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
    ) -> None:
        self.target = target
        self.backup_path = backup_path
        self.existed = existed
        self._files = files
        self._original = original
        self._mode = mode
        self._uid = uid
        self._gid = gid
        self._lines: List[str] = original.splitlines()
        self._dirty = False
        self._state = TransactionState.OPEN

    @classmethod
    def open(
        cls,
        target: Union[str, Path],
        files: Optional[FileManager] = None,
        backup_dir: Optional[Path] = None,
        missing_ok: bool = False,
    ) -> "ConfigTransaction":
        """Read ``target`` and write its backup.

        Args:
            target: File to mutate
            files: Filesystem boundary, a default ``FileManager`` if None
            backup_dir: Where backups go; beside the target if None
            missing_ok: Allow a target that does not exist yet. There is
                nothing to back up, and rolling back removes the file.

        Raises:
            FileIOError: If the target is unreadable or the backup cannot be written
        """
        files = files or FileManager()
        target = Path(target)
        backup_path = backup_path_for(target, backup_dir)

        if not files.exists(target):
            if not missing_ok:
                raise FileIOError(target, "file does not exist")
            logger.info("opening transaction on new file", file=str(target))
            return cls(target, backup_path, files, "", existed=False)

        original = files.read_text(target)
        st = files.stat(target)
        mode = st.st_mode & 0o7777

        if backup_dir is not None:
            files.make_dir(backup_dir, mode=0o700)
        files.atomic_write(backup_path, original, mode=mode)
        logger.info("backup created", file=str(target), backup=str(backup_path))

        return cls(
            target,
            backup_path,
            files,
            original,
            existed=True,
            mode=mode,
            uid=st.st_uid,
            gid=st.st_gid,
        )

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def committed(self) -> bool:
        return self._state == TransactionState.COMMITTED

    @property
    def rolled_back(self) -> bool:
        return self._state == TransactionState.ROLLED_BACK

    @property
    def lines(self) -> Tuple[str, ...]:
        """Current working copy."""
        return tuple(self._lines)

    def rewrite(self, transform: Transform) -> None:
        """Apply a pure transform to the working copy.

        Raises:
            FormatError: If the transform fails or returns something other
                than a list of single lines. The working copy is unchanged.
            TransactionStateError: If the transaction was already written out
        """
        self._require(TransactionState.OPEN, "rewrite")

        try:
            result = transform(list(self._lines))
        except FormatError:
            raise
        except Exception as e:
            raise FormatError(f"Transform failed for {self.target}: {e}") from e

        if not isinstance(result, list) or not all(isinstance(line, str) for line in result):
            raise FormatError(f"Transform for {self.target} must return a list of strings")
        if any("\n" in line or "\r" in line for line in result):
            raise FormatError(f"Transform for {self.target} returned embedded newlines")

        self._lines = result
        self._dirty = True

    def diff(self) -> str:
        """Unified diff between the original content and the working copy."""
        return "".join(
            difflib.unified_diff(
                self._original.splitlines(keepends=True),
                [line + "\n" for line in self._lines],
                fromfile=str(self.backup_path),
                tofile=str(self.target),
            )
        )

    def validate(self, validator: Optional[ConfigValidator] = None) -> ValidationReport:
        """Swap the working copy into place and check it.

        Without a validator the transaction is committed as soon as the
        rename completes. With one, a passing report leaves the transaction
        written and awaiting :meth:`commit`. A failing report, or a validator
        that cannot run, restores the original and raises.

        Raises:
            FileIOError: If the new content cannot be written; the target is untouched
            ValidationRejected: If the validator rejected the file, after rollback
            RollbackError: If the validator rejected the file and restoring failed
        """
        self._require(TransactionState.OPEN, "validate")

        if self._dirty:
            logger.debug("writing rewritten file", file=str(self.target), diff=self.diff())
        self._files.atomic_write(
            self.target, self._render(), mode=self._mode, uid=self._uid, gid=self._gid
        )
        self._state = TransactionState.WRITTEN

        if validator is None:
            self._state = TransactionState.COMMITTED
            logger.info("file written", file=str(self.target))
            return ValidationReport(True, "no validator")

        try:
            report = validator.check(self.target)
        except (ExecutionError, OperationTimeout) as e:
            report = ValidationReport(False, f"validator could not run: {e}")

        if report.passed:
            logger.info("file validated", file=str(self.target), command=report.command)
            return report

        logger.error(
            "validation rejected, restoring backup",
            file=str(self.target),
            command=report.command,
            diagnostics=report.diagnostics,
        )
        self.rollback()
        raise ValidationRejected(self.target, report)

    def commit(self) -> None:
        """Mark the transaction committed. Idempotent."""
        if self._state == TransactionState.COMMITTED:
            return
        if self._state != TransactionState.WRITTEN:
            raise TransactionStateError(
                f"Cannot commit {self.target} in state {self._state.value}"
            )
        self._state = TransactionState.COMMITTED
        logger.info("transaction committed", file=str(self.target), backup=str(self.backup_path))

    def rollback(self) -> None:
        """Put the original content back.

        Safe to call before anything was written and after a previous
        rollback. The backup file is kept for the operator.

        Raises:
            TransactionStateError: If the transaction was committed
            RollbackError: If the original content could not be restored
        """
        if self._state == TransactionState.ROLLED_BACK:
            return
        if self._state == TransactionState.COMMITTED:
            raise TransactionStateError(f"Cannot roll back committed {self.target}")
        if self._state == TransactionState.OPEN:
            self._state = TransactionState.ROLLED_BACK
            return

        try:
            if self.existed:
                content = self._restore_source()
                self._files.atomic_write(
                    self.target, content, mode=self._mode, uid=self._uid, gid=self._gid
                )
                self._verify_restored(content)
            else:
                self._files.remove(self.target)
        except FileIOError as e:
            logger.critical(
                "ROLLBACK FAILED: file may be inconsistent",
                file=str(self.target),
                backup=str(self.backup_path),
                error=str(e),
            )
            raise RollbackError(self.target, e.cause) from e

        self._state = TransactionState.ROLLED_BACK
        logger.warning("transaction rolled back", file=str(self.target))

    def __enter__(self) -> "ConfigTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._state == TransactionState.WRITTEN:
            self.rollback()

    def _restore_source(self) -> bytes:
        original = self._original.encode(ENCODING, ERRORS)
        try:
            return self._files.read_bytes(self.backup_path)
        except FileIOError as e:
            logger.warning(
                "backup unreadable, restoring from memory",
                backup=str(self.backup_path),
                error=str(e),
            )
            return original

    def _verify_restored(self, content: bytes) -> None:
        if self._files.dry_run:
            return
        if self._files.read_bytes(self.target) != content:
            raise FileIOError(self.target, "restored content does not match the backup")

    def _render(self) -> str:
        if not self._dirty:
            return self._original
        if not self._lines:
            return ""
        return "\n".join(self._lines) + "\n"

    def _require(self, state: TransactionState, action: str) -> None:
        if self._state != state:
            raise TransactionStateError(
                f"Cannot {action} {self.target} in state {self._state.value}"
            )
