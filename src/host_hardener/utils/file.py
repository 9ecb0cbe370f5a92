"""File management utilities."""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

import structlog

from host_hardener.exceptions import FileIOError

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

# Round-trips arbitrary bytes through str so rewritten files stay byte-exact.
ENCODING = "utf-8"
ERRORS = "surrogateescape"


class FileManager:
    """Filesystem boundary with atomic replace semantics.

    Every failure is raised as ``FileIOError`` carrying the path and the
    underlying cause.
    """

    def __init__(self, dry_run: bool = False) -> None:
        """Initialize file manager.

        Args:
            dry_run: If True, reads happen but every mutation is only logged
        """
        self.dry_run = dry_run

    def exists(self, filepath: PathLike) -> bool:
        return Path(filepath).exists()

    def stat(self, filepath: PathLike) -> os.stat_result:
        try:
            return os.stat(filepath)
        except OSError as e:
            raise FileIOError(filepath, e) from e

    def read_text(self, filepath: PathLike) -> str:
        """Read file content.

        Args:
            filepath: Path to file

        Returns:
            File content as string
        """
        try:
            with open(filepath, encoding=ENCODING, errors=ERRORS, newline="") as f:
                return f.read()
        except OSError as e:
            raise FileIOError(filepath, e) from e

    def read_bytes(self, filepath: PathLike) -> bytes:
        try:
            with open(filepath, "rb") as f:
                return f.read()
        except OSError as e:
            raise FileIOError(filepath, e) from e

    def atomic_write(
        self,
        filepath: PathLike,
        content: Union[str, bytes],
        mode: Optional[int] = None,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
    ) -> None:
        """Replace a file's content in one rename.

        The data is written to a temp file in the target's directory, fsynced,
        given the requested mode and ownership, then moved over the target
        with ``os.replace``. Readers see either the old file or the new one.

        Args:
            filepath: Path to file
            content: New content
            mode: Permission bits for the new file, 0o644 if not given
            uid: Owner to set, left unchanged if None
            gid: Group to set, left unchanged if None
        """
        path = Path(filepath)
        if self.dry_run:
            logger.info("dry run: skipping write", file=str(path))
            return

        data = content.encode(ENCODING, ERRORS) if isinstance(content, str) else content
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            os.chmod(tmp_name, 0o644 if mode is None else mode)
            if uid is not None or gid is not None:
                st = os.stat(tmp_name)
                want_uid = st.st_uid if uid is None else uid
                want_gid = st.st_gid if gid is None else gid
                if (want_uid, want_gid) != (st.st_uid, st.st_gid):
                    os.chown(tmp_name, want_uid, want_gid)

            os.replace(tmp_name, path)
            tmp_name = None
            self._sync_dir(path.parent)
        except OSError as e:
            raise FileIOError(path, e) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def copy_file(self, source: PathLike, destination: PathLike) -> None:
        """Copy a file atomically, keeping its permission bits.

        Args:
            source: File to copy
            destination: Where the copy should land
        """
        st = self.stat(source)
        data = self.read_bytes(source)
        self.atomic_write(destination, data, mode=st.st_mode & 0o7777)

    def remove(self, filepath: PathLike) -> None:
        """Remove a file, ignoring one that is already gone."""
        if self.dry_run:
            logger.info("dry run: skipping remove", file=str(filepath))
            return
        try:
            Path(filepath).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise FileIOError(filepath, e) from e

    def make_dir(self, dirpath: PathLike, mode: int = 0o755) -> None:
        if self.dry_run:
            logger.info("dry run: skipping mkdir", directory=str(dirpath))
            return
        try:
            Path(dirpath).mkdir(mode=mode, parents=True, exist_ok=True)
        except OSError as e:
            raise FileIOError(dirpath, e) from e

    def set_mode(self, filepath: PathLike, mode: int) -> None:
        if self.dry_run:
            logger.info("dry run: skipping chmod", file=str(filepath), mode=oct(mode))
            return
        try:
            os.chmod(filepath, mode)
        except OSError as e:
            raise FileIOError(filepath, e) from e

    def set_owner(self, filepath: PathLike, user: str, group: Optional[str] = None) -> None:
        if self.dry_run:
            logger.info("dry run: skipping chown", file=str(filepath), user=user)
            return
        try:
            shutil.chown(filepath, user=user, group=group or user)
        except (OSError, LookupError) as e:
            raise FileIOError(filepath, e) from e

    def append_text(self, filepath: PathLike, content: str, mode: int = 0o600) -> None:
        """Append content to a file, creating it with ``mode`` if missing."""
        if self.dry_run:
            logger.info("dry run: skipping append", file=str(filepath))
            return
        try:
            fd = os.open(filepath, os.O_WRONLY | os.O_APPEND | os.O_CREAT, mode)
            with os.fdopen(fd, "a", encoding=ENCODING, errors=ERRORS) as f:
                f.write(content)
        except OSError as e:
            raise FileIOError(filepath, e) from e

    @staticmethod
    def _sync_dir(dirpath: Path) -> None:
        """Flush the directory entry so the rename survives a crash."""
        try:
            fd = os.open(dirpath, os.O_RDONLY)
        except OSError as e:
            logger.debug("cannot open directory for fsync", directory=str(dirpath), error=str(e))
            return
        try:
            os.fsync(fd)
        except OSError as e:
            # Some filesystems reject fsync on directories.
            logger.debug("directory fsync failed", directory=str(dirpath), error=str(e))
        finally:
            os.close(fd)
