"""
═══════════════════════════════════════════════════════════════════════════
PROVISIONING SERVICE - state machine for the OCR runtime environment
═══════════════════════════════════════════════════════════════════════════

Flow per dependency:  probe -> (download) -> install -> verify
    Unknown --check--> Missing | Installed
    Missing --install--> Installing --> Installed | Missing (failed/cancelled)
    Installing --cancel--> Cancelling --> Missing
    Installed --remove--> Missing

Package and Model require the Interpreter to be Installed. Probing alone
never turns Installed into Missing; only remove() does.
"""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

from provisioner.core.exceptions import (
    EnvironmentNotReadyError,
    InstallCancelledError,
    InstallerError,
    InvalidStateTransitionError,
    PrerequisiteMissingError,
    ProvisioningBaseException,
    VerificationMismatchError,
)
from provisioner.core.paths import session_root
from provisioner.logging_config import (
    bind_install,
    close_install_log,
    open_install_log,
    prune_install_logs,
)
from provisioner.models.provisioning import (
    DependencyKind,
    DependencyState,
    EnvironmentSnapshot,
    InstallStatus,
    ProgressEvent,
    ProgressSample,
)
from provisioner.services.cleanup_service import CleanupManager
from provisioner.services.downloader import Downloader
from provisioner.services.installation_session import InstallationSession
from provisioner.services.installers import build_installers
from provisioner.services.probe_service import DependencyProbe
from provisioner.services.process_runner import ProcessRunner
from provisioner.services.progress_estimator import expected_duration_for

logger = logging.getLogger(__name__)

Notification = Union[EnvironmentSnapshot, ProgressEvent]
Listener = Callable[[Notification], None]

INTERPRETER = DependencyKind.INTERPRETER
INSTALLED = DependencyState.INSTALLED
MISSING = DependencyState.MISSING


class ProvisioningService:
    """
    Owns the dependency states, the install sessions and the listeners.

    Constructed by the composition root (FastAPI lifespan or the CLI); all
    collaborators can be injected for tests.
    """

    def __init__(
        self,
        settings,
        probe: Optional[DependencyProbe] = None,
        runner: Optional[ProcessRunner] = None,
        downloader: Optional[Downloader] = None,
        cleanup: Optional[CleanupManager] = None,
        installers: Optional[dict] = None,
        ignore_check: Optional[bool] = None,
    ):
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self.probe = probe or DependencyProbe(settings, self.runner)
        self.downloader = downloader or Downloader(settings)
        self.cleanup = cleanup or CleanupManager(settings, self.runner)
        self.installers = installers or build_installers(settings, self.runner, self.downloader, self.cleanup)
        self.ignore_check = settings.IGNORE_ENVIRONMENT_CHECK if ignore_check is None else ignore_check

        self._states: dict[DependencyKind, DependencyState] = {k: DependencyState.UNKNOWN for k in DependencyKind}
        self._locks: dict[DependencyKind, asyncio.Lock] = {k: asyncio.Lock() for k in DependencyKind}
        self._sessions: dict[DependencyKind, InstallationSession] = {}
        self._latest: dict[DependencyKind, ProgressEvent] = {}
        self._listeners: list[Listener] = []

        if self.ignore_check:
            logger.warning("Environment check bypassed by configuration (IGNORE_ENVIRONMENT_CHECK)")

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def current_snapshot(self) -> EnvironmentSnapshot:
        return EnvironmentSnapshot.from_states(self._states, check_bypassed=self.ignore_check)

    def state_of(self, kind: DependencyKind) -> DependencyState:
        return self._states[kind]

    def session_for(self, kind: DependencyKind) -> Optional[InstallationSession]:
        return self._sessions.get(kind)

    def latest_progress(self, kind: DependencyKind) -> Optional[ProgressEvent]:
        return self._latest.get(kind)

    def install_guide_url(self, kind: DependencyKind) -> str:
        return {
            DependencyKind.INTERPRETER: self.settings.INTERPRETER_GUIDE_URL,
            DependencyKind.PACKAGE: self.settings.PACKAGE_GUIDE_URL,
            DependencyKind.MODEL: self.settings.MODEL_GUIDE_URL,
        }[kind]

    def install_guides(self) -> dict[str, str]:
        return {kind.value: self.install_guide_url(kind) for kind in DependencyKind}

    def ensure_ready(self) -> EnvironmentSnapshot:
        """Gate for the OCR feature; raises unless ready or the check is bypassed."""
        snapshot = self.current_snapshot()
        if snapshot.ready or self.ignore_check:
            return snapshot

        missing = [
            kind.value for kind in (DependencyKind.INTERPRETER, DependencyKind.PACKAGE)
            if snapshot.state_of(kind) != INSTALLED
        ]
        raise EnvironmentNotReadyError(
            f"OCR environment not ready, missing: {', '.join(missing)}",
            context={
                "missing": missing,
                "guides": {kind: self.install_guide_url(DependencyKind(kind)) for kind in missing},
            }
        )

    # ═══════════════════════════════════════════════════════════════════════
    # LISTENERS
    # ═══════════════════════════════════════════════════════════════════════

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to snapshots and progress events. Returns the unsubscribe function."""
        self._listeners.append(listener)

        def off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return off

    def _notify(self, notification: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Listener {listener!r} failed: {e}", exc_info=True)

    def _emit_snapshot(self) -> EnvironmentSnapshot:
        snapshot = self.current_snapshot()
        self._notify(snapshot)
        return snapshot

    def _publish_progress(self, event: ProgressEvent) -> None:
        self._latest[event.kind] = event
        self._notify(event)

    # ═══════════════════════════════════════════════════════════════════════
    # CHECKING
    # ═══════════════════════════════════════════════════════════════════════

    async def check_all(self) -> EnvironmentSnapshot:
        """Probe Interpreter, then Package and Model only if the interpreter is there."""
        logger.info("🔍 Checking OCR environment...")

        interpreter = await self._probe_kind(INTERPRETER)
        if interpreter == INSTALLED:
            await self._probe_kind(DependencyKind.PACKAGE)
            await self._probe_kind(DependencyKind.MODEL)
        else:
            logger.info("Python not available, skipping package and model checks")

        snapshot = self._emit_snapshot()
        logger.info(
            f"Environment: interpreter={snapshot.interpreter.value} package={snapshot.package.value} "
            f"model={snapshot.model.value} ready={snapshot.ready} | {snapshot.status_message}"
        )
        return snapshot

    async def check(self, kind: DependencyKind) -> DependencyState:
        """Re-probe a single dependency (e.g. the model after a first OCR run)."""
        if kind.requires_interpreter and self._states[INTERPRETER] != INSTALLED:
            return self._states[kind]

        state = await self._probe_kind(kind)
        self._emit_snapshot()
        return state

    async def _probe_kind(self, kind: DependencyKind) -> DependencyState:
        async with self._locks[kind]:
            previous = self._states[kind]
            if kind in self._sessions:
                # Install in flight; its verification probe will decide
                return previous

            self._states[kind] = DependencyState.CHECKING
            observed = MISSING
            try:
                observed = await self.probe.check(kind)
            finally:
                self._states[kind] = self._merge(kind, previous, observed)
            return self._states[kind]

    @staticmethod
    def _merge(kind: DependencyKind, previous: DependencyState, observed: DependencyState) -> DependencyState:
        if previous == INSTALLED and observed != INSTALLED:
            logger.warning(f"⚠️ {kind.value} was installed but the probe no longer finds it; keeping installed")
            return INSTALLED
        return observed

    # ═══════════════════════════════════════════════════════════════════════
    # INSTALLING
    # ═══════════════════════════════════════════════════════════════════════

    async def start_install(self, kind: DependencyKind) -> InstallationSession:
        """
        Validate and start an install in the background.

        A session already running for `kind` is cancelled and fully cleaned
        up before the new one starts.

        Raises:
            PrerequisiteMissingError: Package/Model without an installed interpreter
            InvalidStateTransitionError: state is not Missing
        """
        previous = self._sessions.get(kind)
        if previous is not None:
            logger.info(f"Restarting {kind.value} install, cancelling session {previous.session_id[:8]}")
            self.cancel(kind)
            await previous.wait()

        async with self._locks[kind]:
            self._validate_install(kind)

            await self.cleanup.sweep_stale_sessions(session_root(self.settings, kind.value))

            session = InstallationSession(
                kind,
                Path(self.settings.TEMP_DIR),
                expected_duration_for(kind, self.settings),
                publish=self._publish_progress,
            )
            await asyncio.to_thread(session.work_dir.mkdir, parents=True, exist_ok=True)

            self._sessions[kind] = session
            self._states[kind] = DependencyState.INSTALLING
            self._latest.pop(kind, None)
            session.report(ProgressSample(elapsed=0.0), message=f"Preparing {kind.value} installation...")
            session.task = asyncio.create_task(self._run_install(session), name=f"install-{kind.value}")

        logger.info(f"🚀 Install of {kind.value} started (session {session.session_id[:8]})")
        self._emit_snapshot()
        return session

    def _validate_install(self, kind: DependencyKind) -> None:
        if kind in self._sessions:
            raise InvalidStateTransitionError(
                f"An install of {kind.value} is already running",
                context={"kind": kind.value}
            )
        if kind.requires_interpreter and self._states[INTERPRETER] != INSTALLED:
            raise PrerequisiteMissingError(
                f"Python must be installed before the {kind.value}",
                context={"kind": kind.value, "interpreter": self._states[INTERPRETER].value}
            )
        state = self._states[kind]
        if state != MISSING:
            raise InvalidStateTransitionError(
                f"Cannot install {kind.value} while it is {state.value}",
                context={"kind": kind.value, "state": state.value}
            )

    async def install(self, kind: DependencyKind) -> AsyncIterator[ProgressEvent]:
        """Start an install and stream its events; the last one is terminal."""
        session = await self.start_install(kind)
        async for event in session.events():
            yield event

    async def install_and_wait(self, kind: DependencyKind) -> ProgressEvent:
        session = await self.start_install(kind)
        return await session.wait()

    async def _run_install(self, session: InstallationSession) -> None:
        bind_install(session.kind.value, session.session_id)
        try:
            install_log = open_install_log(self.settings.LOG_DIR, session.kind.value, session.session_id)
        except OSError as e:
            logger.warning(f"Could not open install log for {session.kind.value}: {e}")
            install_log = None

        try:
            await self._install_and_finish(session)
        finally:
            if install_log is not None:
                close_install_log(install_log)
                prune_install_logs(self.settings.LOG_DIR, self.settings.INSTALL_LOG_KEEP)

    async def _install_and_finish(self, session: InstallationSession) -> None:
        kind = session.kind
        ticker = asyncio.create_task(self._tick(session))
        error: Optional[ProvisioningBaseException] = None
        verified = False

        try:
            await self.installers[kind].install(session)
            session.raise_if_cancelled()

            session.report_line("Verifying installation...")
            verified = await self.probe.check(kind) == INSTALLED
            if not verified:
                error = VerificationMismatchError(
                    f"The {kind.value} installer finished but the {kind.value} is still not detected",
                    context={"kind": kind.value}
                )
        except InstallCancelledError:
            pass
        except ProvisioningBaseException as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected error installing {kind.value}: {e}", exc_info=True)
            error = InstallerError(f"Unexpected error: {e}", context={"kind": kind.value})
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)

        if verified and error is None:
            session.try_claim(InstallStatus.INSTALLED)
        elif error is not None:
            session.try_claim(InstallStatus.FAILED)
        else:
            session.try_claim(InstallStatus.CANCELLED)

        await self._finish(session, error)

    async def _finish(self, session: InstallationSession, error: Optional[ProvisioningBaseException]) -> None:
        kind = session.kind
        outcome = session.outcome

        if session.process is not None:
            session.process.kill(tree=True)

        paths = [session.work_dir]
        if outcome != InstallStatus.INSTALLED:
            paths += session.artifacts
        try:
            result = await self.cleanup.remove(paths)
            if not result.ok:
                logger.warning(f"Cleanup after {kind.value} install left behind: {result.left_behind}")
        except OSError as e:
            logger.error(f"Cleanup after {kind.value} install failed: {e}", exc_info=True)

        async with self._locks[kind]:
            self._states[kind] = INSTALLED if outcome == InstallStatus.INSTALLED else MISSING
            self._sessions.pop(kind, None)

        event = session.terminal_event(error)
        if outcome == InstallStatus.FAILED:
            logger.error(f"❌ Install of {kind.value} failed [{event.error_code}]: {event.message}")
        else:
            logger.info(f"Install of {kind.value} finished: {outcome.value}")

        session.finish(event)
        self._emit_snapshot()

    async def _tick(self, session: InstallationSession) -> None:
        while True:
            await asyncio.sleep(self.settings.PROGRESS_TICK_SECONDS)
            session.tick()

    # ═══════════════════════════════════════════════════════════════════════
    # CANCEL / REMOVE / SHUTDOWN
    # ═══════════════════════════════════════════════════════════════════════

    def cancel(self, kind: DependencyKind) -> bool:
        """
        Request cancellation of a running install. Returns False when nothing
        is installing or the install already reached its outcome.
        """
        session = self._sessions.get(kind)
        if session is None or self._states[kind] != DependencyState.INSTALLING:
            return False
        if not session.request_cancel():
            return False

        self._states[kind] = DependencyState.CANCELLING
        logger.info(f"🛑 Cancelling {kind.value} install (session {session.session_id[:8]})")
        self._emit_snapshot()
        return True

    async def remove(self, kind: DependencyKind) -> EnvironmentSnapshot:
        """Uninstall a dependency: pip uninstall for the package, delete the model dir."""
        if kind == INTERPRETER:
            raise InvalidStateTransitionError("Removing the interpreter is not supported", context={"kind": kind.value})

        async with self._locks[kind]:
            if kind in self._sessions:
                raise InvalidStateTransitionError(
                    f"Cannot remove {kind.value} while it is being installed",
                    context={"kind": kind.value}
                )
            if kind == DependencyKind.PACKAGE and self._states[INTERPRETER] != INSTALLED:
                raise PrerequisiteMissingError("Python is needed to uninstall the package", context={"kind": kind.value})

            logger.info(f"Removing {kind.value}...")
            await self.installers[kind].uninstall()
            self._states[kind] = MISSING

        return self._emit_snapshot()

    async def aclose(self) -> None:
        """Cancel all running installs and wait for their cleanup."""
        sessions = list(self._sessions.values())
        for session in sessions:
            self.cancel(session.kind)
        if sessions:
            await asyncio.gather(*(s.wait() for s in sessions))
        self.downloader.close()
        self._listeners.clear()
