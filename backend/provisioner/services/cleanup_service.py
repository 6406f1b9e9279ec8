"""
═══════════════════════════════════════════════════════════════════════════
CLEANUP MANAGER - restore a clean slate after cancelled or failed installs
═══════════════════════════════════════════════════════════════════════════

Removal is idempotent: paths that are already gone are reported as missing,
paths still locked after all retries are reported as left behind. Neither
case raises.
"""

import asyncio
import errno
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Union

import aiofiles.os
import psutil

from provisioner.core.exceptions import FileLockedError
from provisioner.core.retry import retry_with_backoff
from provisioner.services.process_runner import LineCallback, ProcessHandle, ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

LOCK_ERRNOS = {errno.EACCES, errno.EBUSY, errno.EPERM, errno.ETXTBSY}
# ERROR_ACCESS_DENIED, ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
LOCK_WINERRORS = {5, 32, 33}


def is_lock_error(error: OSError) -> bool:
    """True for errors caused by another process holding the file."""
    if getattr(error, "winerror", None) in LOCK_WINERRORS:
        return True
    return isinstance(error, PermissionError) or error.errno in LOCK_ERRNOS


@dataclass
class CleanupResult:
    removed: list[Path] = field(default_factory=list)
    missing: list[Path] = field(default_factory=list)
    left_behind: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.left_behind

    def merge(self, other: "CleanupResult") -> "CleanupResult":
        return CleanupResult(
            removed=self.removed + other.removed,
            missing=self.missing + other.missing,
            left_behind=self.left_behind + other.left_behind,
        )


class CleanupManager:
    def __init__(self, settings, runner: Optional[ProcessRunner] = None):
        self.runner = runner or ProcessRunner()
        self._delete = retry_with_backoff(
            max_attempts=settings.CLEANUP_MAX_ATTEMPTS,
            initial_delay=settings.CLEANUP_RETRY_DELAY_SECONDS,
            max_delay=5.0,
            exceptions=(FileLockedError,),
        )(self._delete_once)

    async def remove(self, paths: Iterable[Union[str, Path]]) -> CleanupResult:
        result = CleanupResult()

        for path in (Path(p) for p in paths):
            if not path.exists() and not path.is_symlink():
                result.missing.append(path)
                continue

            try:
                await self._delete(path)
                result.removed.append(path)
            except FileLockedError as e:
                logger.warning(f"⚠️ Leaving {path} behind, still locked: {e.message}")
                result.left_behind.append(path)

        if result.removed:
            logger.info(f"🧹 Removed {len(result.removed)} path(s)")
        return result

    async def _delete_once(self, path: Path) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                await asyncio.to_thread(shutil.rmtree, path)
            else:
                await aiofiles.os.remove(path)
        except FileNotFoundError:
            # Gone between the existence check and the delete
            return
        except OSError as e:
            if is_lock_error(e):
                raise FileLockedError(
                    f"{path} is in use: {e}",
                    context={"path": str(path)}
                ) from e
            raise

    # ═══════════════════════════════════════════════════════════════════════
    # PACKAGE UNINSTALL
    # ═══════════════════════════════════════════════════════════════════════

    async def uninstall_package(
        self,
        interpreter: str,
        package: str,
        env: Optional[Mapping[str, str]] = None,
        on_line: Optional[LineCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_start: Optional[Callable[[ProcessHandle], None]] = None,
    ) -> ProcessResult:
        """
        `pip uninstall -y <package>`. pip exits 0 when the package is absent,
        so a non-zero code means a real failure (usually a locked file).
        """
        logger.info(f"Uninstalling {package} with {interpreter}")
        result = await self.runner.run(
            [interpreter, "-m", "pip", "uninstall", "-y", package],
            on_line=on_line,
            cancel_event=cancel_event,
            env=env,
            on_start=on_start,
        )
        if not result.ok and not result.cancelled:
            logger.warning(f"pip uninstall {package} exited with {result.returncode}")
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # STALE SESSIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def sweep_stale_sessions(self, kind_root: Path, keep: Optional[str] = None) -> CleanupResult:
        """
        Remove session dirs left by a crashed run, killing any process that
        still runs from inside them.
        """
        kind_root = Path(kind_root)
        if not kind_root.is_dir():
            return CleanupResult()

        stale = [p for p in kind_root.iterdir() if p.name != keep]
        if not stale:
            return CleanupResult()

        logger.info(f"Sweeping {len(stale)} stale session dir(s) under {kind_root}")
        killed = await asyncio.to_thread(kill_processes_under, stale)
        if killed:
            logger.warning(f"Killed {killed} orphaned installer process(es)")
        return await self.remove(stale)


def kill_processes_under(dirs: Iterable[Path]) -> int:
    """Kill processes whose command line or working dir is inside one of `dirs`."""
    roots = [str(Path(d).resolve()) for d in dirs]
    own_pid = os.getpid()
    killed = 0

    for proc in psutil.process_iter(["pid", "cmdline", "cwd"]):
        info = proc.info
        if info["pid"] == own_pid:
            continue
        cmdline = " ".join(info.get("cmdline") or [])
        cwd = info.get("cwd") or ""
        if not any(root in cmdline or cwd.startswith(root) for root in roots):
            continue
        try:
            proc.kill()
            killed += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    return killed
