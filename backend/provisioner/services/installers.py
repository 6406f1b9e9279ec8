"""
═══════════════════════════════════════════════════════════════════════════
INSTALLERS - the concrete work behind install(kind)
═══════════════════════════════════════════════════════════════════════════

Each installer runs inside an InstallationSession: it downloads into and
runs processes from the session's work dir, feeds output lines and byte
counts to the session for progress, and raises a ProvisioningBaseException
subclass on failure. State transitions, verification and cleanup belong to
the ProvisioningService.
"""

import asyncio
import logging
import os
import shutil
import sys
import tarfile
from pathlib import Path
from typing import Mapping, Optional, Sequence

from provisioner.core.exceptions import (
    FileLockedError,
    InstallCancelledError,
    InstallerError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ProvisioningBaseException,
    TransientIOError,
)
from provisioner.core.paths import model_install_dir
from provisioner.core.retry import retry_with_backoff
from provisioner.models.provisioning import DependencyKind
from provisioner.services.cleanup_service import CleanupManager, is_lock_error
from provisioner.services.downloader import Downloader
from provisioner.services.installation_session import InstallationSession
from provisioner.services.process_runner import ProcessResult, ProcessRunner

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════
# FAILURE CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════════

# Windows Installer: 1602 user cancelled, 1223 UAC declined, 740 elevation required
PERMISSION_EXIT_CODES = {1602, 1223, 740}
# 1618: another installation is already in progress
TRANSIENT_EXIT_CODES = {1618}

PERMISSION_MARKERS = ("permission denied", "access is denied", "[errno 13]")
TRANSIENT_MARKERS = (
    "[winerror 32]",
    "connectionerror",
    "connection reset",
    "connection aborted",
    "connection refused",
    "read timed out",
    "timed out",
    "temporary failure in name resolution",
    "max retries exceeded",
)

TAIL_LINES = 20


def classify_failure(result: ProcessResult) -> ProvisioningBaseException:
    """Map a failed process to the error taxonomy."""
    tail = [line for line in (result.stdout + result.stderr) if line.strip()][-TAIL_LINES:]
    context = {"args": result.args, "returncode": result.returncode, "output_tail": tail}
    program = Path(result.args[0]).name if result.args else "process"
    output = result.output.lower()
    reason = next((line.strip() for line in reversed(result.stderr) if line.strip()), None)
    summary = f"{program} exited with code {result.returncode}" + (f": {reason}" if reason else "")

    if result.returncode in PERMISSION_EXIT_CODES or any(m in output for m in PERMISSION_MARKERS):
        return PermissionDeniedError(summary, context=context)
    if result.returncode in TRANSIENT_EXIT_CODES or any(m in output for m in TRANSIENT_MARKERS):
        return TransientIOError(summary, context=context)
    return InstallerError(summary, context=context)


# ═══════════════════════════════════════════════════════════════════════════
# BASE
# ═══════════════════════════════════════════════════════════════════════════

class BaseInstaller:
    kind: DependencyKind

    def __init__(self, settings, runner: ProcessRunner, downloader: Downloader, cleanup: CleanupManager):
        self.settings = settings
        self.runner = runner
        self.downloader = downloader
        self.cleanup = cleanup

    async def install(self, session: InstallationSession) -> None:
        raise NotImplementedError

    async def uninstall(self) -> None:
        raise InvalidStateTransitionError(
            f"Removing the {self.kind.value} is not supported",
            context={"kind": self.kind.value}
        )

    def child_env(self, session: InstallationSession, extra: Optional[Mapping[str, str]] = None) -> dict:
        """Environment for child processes; temp files land in the session dir."""
        env = os.environ.copy()
        work_dir = str(session.work_dir)
        env.update({
            "TMP": work_dir,
            "TEMP": work_dir,
            "TMPDIR": work_dir,
            "PYTHONUNBUFFERED": "1",
            "PIP_DISABLE_PIP_VERSION_CHECK": "1",
            "PIP_NO_INPUT": "1",
        })
        if extra:
            env.update(extra)
        return env

    async def run_step(
        self,
        session: InstallationSession,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        session.raise_if_cancelled()
        result = await self.runner.run(
            args,
            on_line=session.report_line,
            cancel_event=session.cancel_event,
            cwd=session.work_dir,
            env=env if env is not None else self.child_env(session),
            on_start=session.attach_process,
        )
        if result.cancelled:
            raise InstallCancelledError()
        if result.returncode != 0:
            raise classify_failure(result)
        return result

    async def download(self, session: InstallationSession, url: str, filename: str) -> Path:
        session.raise_if_cancelled()
        session.report_line("DOWNLOAD:START")
        result = await self.downloader.download(
            url,
            session.work_dir / filename,
            on_progress=session.report_fraction,
            cancel_event=session.cancel_event,
        )
        if result.cancelled:
            raise InstallCancelledError()
        return result.path


# ═══════════════════════════════════════════════════════════════════════════
# INTERPRETER
# ═══════════════════════════════════════════════════════════════════════════

class InterpreterInstaller(BaseInstaller):
    """Official python.org installer run unattended, or a configured command."""

    kind = DependencyKind.INTERPRETER

    async def install(self, session: InstallationSession) -> None:
        command = self.settings.INTERPRETER_INSTALL_COMMAND
        if command:
            session.report_line("Installing Python...")
            await self.run_step(session, command)
            return

        url = self.settings.INTERPRETER_INSTALLER_URL
        if not url:
            raise InstallerError("No interpreter installer configured")

        filename = url.rsplit("/", 1)[-1] or "python-installer.exe"
        if filename.lower().endswith(".exe") and sys.platform != "win32":
            raise InstallerError(
                f"{filename} only runs on Windows; set INTERPRETER_INSTALL_COMMAND on this platform",
                context={"url": url, "platform": sys.platform}
            )

        installer_path = await self.download(session, url, filename)

        session.report_line("Installing Python...")
        await self.run_step(session, [str(installer_path), *self.settings.INTERPRETER_INSTALLER_ARGS])
        logger.info("✅ Python installer finished")


# ═══════════════════════════════════════════════════════════════════════════
# PACKAGE
# ═══════════════════════════════════════════════════════════════════════════

class PackageInstaller(BaseInstaller):
    """pip uninstall (clean slate) followed by pip install."""

    kind = DependencyKind.PACKAGE

    def __init__(self, settings, runner, downloader, cleanup):
        super().__init__(settings, runner, downloader, cleanup)
        self._pip_install = retry_with_backoff(
            max_attempts=settings.PACKAGE_INSTALL_ATTEMPTS,
            initial_delay=settings.PACKAGE_RETRY_DELAY_SECONDS,
            exceptions=(TransientIOError,),
        )(self._pip_install_once)

    def pip_install_args(self) -> list[str]:
        args = [
            self.settings.INTERPRETER_EXECUTABLE, "-m", "pip", "install",
            "--progress-bar", "off",
            self.settings.PACKAGE_SPEC,
        ]
        if self.settings.PACKAGE_INDEX_URL:
            args += ["--index-url", self.settings.PACKAGE_INDEX_URL]
        return args

    async def install(self, session: InstallationSession) -> None:
        name = self.settings.PACKAGE_NAME
        session.report_line(f"Removing previous {name} installation...")
        await self.cleanup.uninstall_package(
            self.settings.INTERPRETER_EXECUTABLE,
            name,
            env=self.child_env(session),
            on_line=session.report_line,
            cancel_event=session.cancel_event,
            on_start=session.attach_process,
        )
        session.raise_if_cancelled()

        await self._pip_install(session)
        logger.info(f"✅ pip install {self.settings.PACKAGE_SPEC} finished")

    async def _pip_install_once(self, session: InstallationSession) -> None:
        await self.run_step(session, self.pip_install_args())

    async def uninstall(self) -> None:
        result = await self.cleanup.uninstall_package(
            self.settings.INTERPRETER_EXECUTABLE,
            self.settings.PACKAGE_NAME,
        )
        if result.returncode != 0:
            raise classify_failure(result)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL
# ═══════════════════════════════════════════════════════════════════════════

def plan_model_copy(staging: Path, target: Path) -> list[Path]:
    """
    Paths under an existing `target` that copying `staging` into it will
    create or overwrite. New directories are listed once, at their top level.
    Tracking these lets a cancelled or unverified install take its files back out.
    """
    planned = []
    for root, dirs, files in os.walk(staging):
        dest_root = target / Path(root).relative_to(staging)
        for name in list(dirs):
            if not (dest_root / name).exists():
                planned.append(dest_root / name)
                dirs.remove(name)
        planned.extend(dest_root / name for name in files)
    return planned


@retry_with_backoff(max_attempts=3, initial_delay=0.5, exceptions=(FileLockedError,))
def copy_into_place(source: Path, target: Path) -> None:
    try:
        shutil.copytree(source, target, dirs_exist_ok=True)
    except shutil.Error as e:
        # Per-file failures collected by copytree; usually a locked model file
        raise FileLockedError(f"Copying models into {target} failed: {e}", context={"path": str(target)}) from e
    except OSError as e:
        if is_lock_error(e):
            raise FileLockedError(f"{target} is in use: {e}", context={"path": str(target)}) from e
        raise


class ModelInstaller(BaseInstaller):
    """
    Model files are staged inside the session dir and copied into the model
    directory only once complete, so a cancelled download never leaves
    half a model where the probe looks.
    """

    kind = DependencyKind.MODEL

    async def install(self, session: InstallationSession) -> None:
        staging = session.work_dir / "models"
        staging.mkdir(parents=True, exist_ok=True)

        url = self.settings.MODEL_ARCHIVE_URL
        if url:
            filename = url.rsplit("/", 1)[-1].split("?", 1)[0] or "models.zip"
            archive = await self.download(session, url, filename)
            session.raise_if_cancelled()
            session.report_line(f"Extracting {filename}...")
            try:
                # "data" filter rejects members that would land outside staging
                await asyncio.to_thread(shutil.unpack_archive, str(archive), str(staging), filter="data")
            except (shutil.ReadError, ValueError, tarfile.TarError) as e:
                raise InstallerError(f"Cannot unpack {filename}: {e}", context={"url": url}) from e
        else:
            # Let the package fetch its own default models into the staging dir
            env = self.child_env(session, {self.settings.MODEL_HOME_ENV_VAR: str(staging)})
            session.report_line("DOWNLOAD:START")
            await self.run_step(
                session,
                [self.settings.INTERPRETER_EXECUTABLE, "-c", self.settings.MODEL_FETCH_CODE],
                env=env,
            )

        session.raise_if_cancelled()
        extension = self.settings.MODEL_FILE_EXTENSION
        found = await asyncio.to_thread(lambda: next(staging.rglob(f"*{extension}"), None))
        if found is None:
            raise InstallerError(
                f"No {extension} files were produced",
                context={"staging": str(staging)}
            )

        target = model_install_dir(self.settings)
        if target.exists():
            for path in await asyncio.to_thread(plan_model_copy, staging, target):
                session.track(path)
        else:
            session.track(target)

        session.raise_if_cancelled()
        session.report_line(f"Installing model files into {target}...")
        await asyncio.to_thread(copy_into_place, staging, target)

    async def uninstall(self) -> None:
        target = model_install_dir(self.settings)
        result = await self.cleanup.remove([target])
        if not result.ok:
            raise FileLockedError(f"Model directory {target} is in use", context={"path": str(target)})


def build_installers(settings, runner: ProcessRunner, downloader: Downloader, cleanup: CleanupManager) -> dict:
    return {
        cls.kind: cls(settings, runner, downloader, cleanup)
        for cls in (InterpreterInstaller, PackageInstaller, ModelInstaller)
    }
