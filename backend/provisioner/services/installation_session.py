import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from provisioner.core.exceptions import InstallCancelledError, ProvisioningBaseException
from provisioner.models.provisioning import (
    DependencyKind,
    InstallStatus,
    ProgressEvent,
    ProgressSample,
)
from provisioner.services.process_runner import ProcessHandle
from provisioner.services.progress_estimator import DEFAULT_MILESTONES, estimate_progress

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 200


class InstallationSession:
    """
    One in-flight install of one dependency kind.

    Owns the cancellation event, the work dir, the running process and the
    progress value. The outcome is claimed exactly once: whichever of
    cancel / success / failure calls `try_claim` first decides it.
    """

    def __init__(
        self,
        kind: DependencyKind,
        temp_root: Path,
        expected_duration: float,
        publish: Optional[Callable[[ProgressEvent], None]] = None,
        milestones=DEFAULT_MILESTONES,
    ):
        self.kind = kind
        self.session_id = uuid.uuid4().hex
        self.work_dir = Path(temp_root) / kind.value / self.session_id
        self.expected_duration = expected_duration
        self.milestones = milestones
        self.started_at = time.monotonic()

        self.cancel_event = asyncio.Event()
        self.process: Optional[ProcessHandle] = None
        self.task: Optional[asyncio.Task] = None
        # Paths outside work_dir the installer created and must remove on failure
        self.artifacts: list[Path] = []

        self.progress = 0
        self.message = "Starting installation..."
        self.latest: Optional[ProgressEvent] = None

        self._publish = publish
        self._queues: list[asyncio.Queue] = []
        self._outcome: Optional[InstallStatus] = None
        self._terminal: Optional[ProgressEvent] = None
        self._done = asyncio.Event()

    # ═══════════════════════════════════════════════════════════════════════
    # OUTCOME
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def outcome(self) -> Optional[InstallStatus]:
        return self._outcome

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def try_claim(self, outcome: InstallStatus) -> bool:
        if self._outcome is not None:
            return False
        self._outcome = outcome
        return True

    def request_cancel(self) -> bool:
        """Claim Cancelled, signal the installer and kill the owned process tree."""
        if not self.try_claim(InstallStatus.CANCELLED):
            return False
        self.cancel_event.set()
        if self.process is not None:
            self.process.kill(tree=True)
        return True

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise InstallCancelledError(context={"kind": self.kind.value, "session_id": self.session_id})

    def attach_process(self, handle: ProcessHandle) -> None:
        self.process = handle
        if self.cancel_event.is_set():
            handle.kill(tree=True)

    def track(self, path: Path) -> None:
        self.artifacts.append(Path(path))

    # ═══════════════════════════════════════════════════════════════════════
    # PROGRESS
    # ═══════════════════════════════════════════════════════════════════════

    def report(self, sample: ProgressSample, message: Optional[str] = None) -> None:
        if self._outcome is not None:
            return

        progress = estimate_progress(sample, self.progress, self.expected_duration, self.milestones)
        message = message[:MAX_MESSAGE_LENGTH] if message else self.message
        if self.latest is not None and progress == self.progress and message == self.message:
            return

        self.progress = progress
        self.message = message
        self._emit(ProgressEvent(
            kind=self.kind,
            session_id=self.session_id,
            status=InstallStatus.INSTALLING,
            progress=progress,
            message=message,
        ))

    def report_line(self, line: str, stream: str = "stdout") -> None:
        logger.debug(f"[{self.kind.value}:{stream}] {line}")
        text = line.strip()
        self.report(ProgressSample(elapsed=self.elapsed, line=text), message=text or None)

    def report_fraction(self, bytes_done: int, total: Optional[int]) -> None:
        fraction = bytes_done / total if total else None
        mb_done = bytes_done / 1024 / 1024
        if total:
            message = f"Downloading... {mb_done:.1f} / {total / 1024 / 1024:.1f} MB"
        else:
            message = f"Downloading... {mb_done:.1f} MB"
        self.report(ProgressSample(elapsed=self.elapsed, fraction=fraction), message=message)

    def tick(self) -> None:
        self.report(ProgressSample(elapsed=self.elapsed))

    # ═══════════════════════════════════════════════════════════════════════
    # TERMINATION
    # ═══════════════════════════════════════════════════════════════════════

    def terminal_event(self, error: Optional[ProvisioningBaseException] = None) -> ProgressEvent:
        outcome = self._outcome or InstallStatus.FAILED
        if outcome == InstallStatus.INSTALLED:
            return ProgressEvent(
                kind=self.kind,
                session_id=self.session_id,
                status=outcome,
                progress=100,
                message="Installed successfully",
            )
        if outcome == InstallStatus.CANCELLED:
            return ProgressEvent(
                kind=self.kind,
                session_id=self.session_id,
                status=outcome,
                progress=self.progress,
                message="Installation cancelled",
            )
        return ProgressEvent(
            kind=self.kind,
            session_id=self.session_id,
            status=InstallStatus.FAILED,
            progress=self.progress,
            message=error.message if error else "Installation failed",
            error_code=error.error_code if error else "INSTALL_FAILED",
            retryable=error.recoverable if error else False,
        )

    def finish(self, event: ProgressEvent) -> None:
        self._terminal = event
        self._emit(event)
        self._queues.clear()
        self._done.set()

    async def wait(self) -> ProgressEvent:
        """Block until the session has terminated; returns the terminal event."""
        await self._done.wait()
        return self._terminal

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Stream of events from now on, starting with the latest; ends after the terminal one."""
        queue: asyncio.Queue = asyncio.Queue()
        if self.latest is not None:
            queue.put_nowait(self.latest)
        if self._terminal is None:
            self._queues.append(queue)

        try:
            while True:
                event = await queue.get()
                yield event
                if event.terminal:
                    return
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def _emit(self, event: ProgressEvent) -> None:
        self.latest = event
        for queue in self._queues:
            queue.put_nowait(event)
        if self._publish:
            self._publish(event)
