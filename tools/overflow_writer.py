"""
Overflow Writer -- persists output that does not fit in a tool response.

The overflow directory is resolved once at startup. A caller-configured
directory is only used after it has been verified to exist (or be creatable)
and to be writable; otherwise the system temp directory is used for the rest
of the run.

Writes go to the effective directory first. When that is a custom directory
and the write fails, the same filename is retried once under the system
default. If both fail, ``PersistenceFailure`` is raised for the caller to
degrade gracefully.
"""

import logging
import re
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from tools.errors import PersistenceFailure

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _verify_directory(path: Path) -> Optional[str]:
    """Return None if *path* exists (or was created) and is writable, else the reason."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return f"cannot create directory: {e}"
    if not path.is_dir():
        return "not a directory"

    marker = path / f".write-check-{uuid.uuid4().hex[:8]}"
    try:
        marker.write_bytes(b"")
        marker.unlink()
    except OSError as e:
        return f"not writable: {e}"
    return None


@dataclass(frozen=True)
class OverflowDirectory:
    """Resolved overflow directory for this run."""
    default: Path                       # System temp directory
    effective: Path                     # Where overflow files are written
    configured: Optional[Path] = None   # Caller-requested directory, if any
    error: Optional[str] = None         # Why the configured directory was rejected

    @property
    def is_default(self) -> bool:
        return self.effective == self.default

    @classmethod
    def resolve(
        cls,
        configured: Union[str, Path, None] = None,
        default: Union[str, Path, None] = None,
    ) -> "OverflowDirectory":
        default_dir = Path(default) if default else Path(tempfile.gettempdir())
        if not configured:
            return cls(default=default_dir, effective=default_dir)

        custom = Path(configured).expanduser()
        reason = _verify_directory(custom)
        if reason:
            logger.warning(
                "Overflow directory %s is unusable (%s); using %s for this run",
                custom, reason, default_dir,
            )
            return cls(default=default_dir, effective=default_dir, configured=custom, error=reason)

        logger.debug("Overflow directory: %s", custom)
        return cls(default=default_dir, effective=custom, configured=custom)


class OverflowWriter:
    """Writes overflow files under an ``OverflowDirectory``."""

    def __init__(self, directory: OverflowDirectory):
        self.directory = directory

    @staticmethod
    def make_filename(category: str, when: Optional[datetime] = None) -> str:
        """Build a collision-resistant filename from a category label and a timestamp."""
        stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M%S-%f")
        label = _UNSAFE_FILENAME_CHARS.sub("_", category).strip("._") or "output"
        return f"{label}-{stamp}-{uuid.uuid4().hex[:6]}.log"

    def path_for(self, category: str) -> Path:
        """Compute (without creating) where an overflow file for *category* would live."""
        return self.directory.effective / self.make_filename(category)

    def write(self, filename: str, data: Union[str, bytes]) -> Path:
        """
        Persist *data* as *filename*, falling back to the system default directory.

        Returns the path actually written. Raises PersistenceFailure when no
        directory accepted the write.
        """
        payload = data.encode("utf-8", errors="replace") if isinstance(data, str) else data
        target = self.directory.effective / filename
        try:
            self._write_file(target, payload)
            return target
        except OSError as e:
            if self.directory.is_default:
                raise PersistenceFailure(f"Failed to save output to {target}: {e}") from e
            logger.warning(
                "Overflow write to %s failed (%s); retrying under %s",
                target, e, self.directory.default,
            )

        fallback = self.directory.default / filename
        try:
            self._write_file(fallback, payload)
        except OSError as e:
            raise PersistenceFailure(
                f"Failed to save output to {target} or {fallback}: {e}"
            ) from e
        return fallback

    @staticmethod
    def _write_file(path: Path, payload: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
