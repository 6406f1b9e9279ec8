"""
═══════════════════════════════════════════════════════════════════════════
PROCESS RUNNER - external installers, pip and probes
═══════════════════════════════════════════════════════════════════════════

Spawns a process with piped stdout/stderr, streams decoded lines to a
callback as they arrive, and can kill the whole process tree. The
cancellation event is checked after every line and also watched while the
process is silent.
"""

import asyncio
import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

import psutil

from provisioner.core.exceptions import (
    ExecutableNotFoundError,
    InstallerError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)

# (line, stream_name) where stream_name is "stdout" or "stderr"
LineCallback = Callable[[str, str], None]

# asyncio StreamReader line limit; pip occasionally prints very long lines
STREAM_LIMIT = 1024 * 1024

# How long to wait for the pipes to drain after the process has exited
DRAIN_TIMEOUT_SECONDS = 5.0

ERROR_ELEVATION_REQUIRED = 740


@dataclass
class ProcessResult:
    args: list[str]
    returncode: Optional[int]
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    @property
    def output(self) -> str:
        return "\n".join(self.stdout + self.stderr)


class ProcessHandle:
    """Owned handle to a spawned process."""

    def __init__(self, process: asyncio.subprocess.Process, args: Sequence[str]):
        self._process = process
        self.args = list(args)
        self._killed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def exited(self) -> bool:
        return self._process.returncode is not None

    async def wait(self) -> int:
        return await self._process.wait()

    def kill(self, tree: bool = True) -> None:
        """
        Kill the process and, with `tree`, all of its descendants.

        Safe to call repeatedly and after the process has exited.
        """
        if self.exited:
            # The pid may already belong to someone else
            return

        try:
            parent = psutil.Process(self.pid)
            children = parent.children(recursive=True) if tree else []
        except psutil.NoSuchProcess:
            return

        # Children first so they cannot be re-parented out of reach
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

        try:
            parent.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Could not kill process {self.pid}: {e}")
            return

        if not self._killed:
            self._killed = True
            logger.info(
                f"🛑 Killed process {self.pid} ({Path(self.args[0]).name})"
                f"{f' and {len(children)} descendant(s)' if children else ''}"
            )


class ProcessRunner:
    """Spawn external programs and stream their output."""

    async def start(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessHandle:
        args = [str(a) for a in args]
        executable = shutil.which(args[0], path=(env or {}).get("PATH")) or args[0]

        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args[1:],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                limit=STREAM_LIMIT,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise ExecutableNotFoundError(
                f"Executable not found: {args[0]}",
                context={"args": args}
            ) from e
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Not allowed to run {args[0]}: {e}",
                context={"args": args}
            ) from e
        except OSError as e:
            if getattr(e, "winerror", None) == ERROR_ELEVATION_REQUIRED:
                raise PermissionDeniedError(
                    f"{args[0]} requires elevation",
                    context={"args": args}
                ) from e
            raise InstallerError(
                f"Failed to start {args[0]}: {e}",
                context={"args": args}
            ) from e

        logger.debug(f"Started pid {process.pid}: {' '.join(args)}")
        return ProcessHandle(process, args)

    async def run(
        self,
        args: Sequence[str],
        on_line: Optional[LineCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_start: Optional[Callable[[ProcessHandle], None]] = None,
    ) -> ProcessResult:
        """
        Run a process to completion.

        Args:
            args: Program and arguments
            on_line: Called with every decoded output line
            cancel_event: When set, the process tree is killed
            timeout: Kill the tree after this many seconds (probes)
            cwd: Working directory
            env: Full environment for the child
            on_start: Receives the handle right after spawning

        Returns:
            ProcessResult; a timeout or cancellation is reported, not raised
        """
        handle = await self.start(args, cwd=cwd, env=env)
        if on_start:
            on_start(handle)

        result = ProcessResult(args=handle.args, returncode=None)
        readers = [
            asyncio.create_task(self._pump(handle, handle._process.stdout, "stdout", result.stdout, on_line, cancel_event)),
            asyncio.create_task(self._pump(handle, handle._process.stderr, "stderr", result.stderr, on_line, cancel_event)),
        ]
        waiter = asyncio.create_task(handle.wait())
        watchers = {waiter}
        cancel_watch = None
        if cancel_event is not None:
            cancel_watch = asyncio.create_task(cancel_event.wait())
            watchers.add(cancel_watch)

        try:
            done, _ = await asyncio.wait(watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if waiter not in done:
                if cancel_watch is not None and cancel_watch in done:
                    result.cancelled = True
                else:
                    result.timed_out = True
                    logger.warning(f"⏱️ {Path(handle.args[0]).name} timed out after {timeout}s")
                handle.kill(tree=True)
                await waiter

            _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
            for reader in pending:
                # A surviving grandchild still holds the pipe open
                reader.cancel()
        except asyncio.CancelledError:
            handle.kill(tree=True)
            for reader in readers:
                reader.cancel()
            raise
        finally:
            if cancel_watch is not None:
                cancel_watch.cancel()

        result.returncode = handle.returncode
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
        return result

    @staticmethod
    async def _pump(
        handle: ProcessHandle,
        stream: asyncio.StreamReader,
        name: str,
        sink: list[str],
        on_line: Optional[LineCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT: drop what is buffered and go on
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            sink.append(line)
            if on_line:
                on_line(line, name)

            if cancel_event is not None and cancel_event.is_set():
                handle.kill(tree=True)
