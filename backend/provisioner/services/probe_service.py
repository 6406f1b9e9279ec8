"""
Dependency probes: is python on PATH, is cnocr importable, are model files on disk.

A probe never raises. Anything inconclusive (missing executable, timeout,
permission problem) is logged as a warning and reported as Missing.
"""

import asyncio
import logging
import os
import re
import sys
from pathlib import Path
from typing import Optional, Sequence

from provisioner.core.exceptions import DetectionAmbiguousError, ProvisioningBaseException
from provisioner.core.paths import model_install_dir, platform_data_dir
from provisioner.core.retry import fallback_on_error
from provisioner.models.provisioning import DependencyKind, DependencyState
from provisioner.services.process_runner import ProcessRunner

logger = logging.getLogger(__name__)

IMPORT_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def refresh_process_path() -> bool:
    """
    Re-read the machine and user PATH from the registry into this process.

    A freshly installed interpreter edits PATH in the registry only; without
    this the retry probe would still not find it. No-op off Windows.
    """
    if sys.platform != "win32":
        return False

    import winreg

    keys = (
        (winreg.HKEY_LOCAL_MACHINE, r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"),
        (winreg.HKEY_CURRENT_USER, "Environment"),
    )
    entries: list[str] = []
    for hive, subkey in keys:
        try:
            with winreg.OpenKey(hive, subkey) as key:
                value, _ = winreg.QueryValueEx(key, "Path")
        except OSError:
            continue
        entries.extend(p for p in os.path.expandvars(value).split(os.pathsep) if p)

    current = os.environ.get("PATH", "").split(os.pathsep)
    added = [p for p in entries if p not in current]
    if not added:
        return False

    os.environ["PATH"] = os.pathsep.join(current + added)
    logger.info(f"PATH refreshed from registry, {len(added)} new entr{'y' if len(added) == 1 else 'ies'}")
    return True


@fallback_on_error(fallback_value=False, exceptions=(OSError,))
def contains_model_files(root: Path, extension: str) -> bool:
    if not root.is_dir():
        return False
    return next(root.rglob(f"*{extension}"), None) is not None


class DependencyProbe:
    def __init__(
        self,
        settings,
        runner: Optional[ProcessRunner] = None,
        model_search_paths: Optional[Sequence[Path]] = None,
    ):
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self._model_search_paths = [Path(p) for p in model_search_paths] if model_search_paths is not None else None
        self.interpreter_version: Optional[str] = None

    async def check(self, kind: DependencyKind) -> DependencyState:
        """Probe one dependency; process-based probes get one delayed retry."""
        if kind == DependencyKind.MODEL:
            return await self.check_model()

        probe = self.check_interpreter if kind == DependencyKind.INTERPRETER else self.check_package
        state = await probe()
        if state == DependencyState.INSTALLED:
            return state

        await asyncio.sleep(self.settings.PROBE_RETRY_DELAY_SECONDS)
        if kind == DependencyKind.INTERPRETER:
            refresh_process_path()
        return await probe()

    async def check_interpreter(self) -> DependencyState:
        args = [self.settings.INTERPRETER_EXECUTABLE, *self.settings.INTERPRETER_VERSION_ARGS]
        result = await self._run_probe(args)
        if result is None or result.returncode != 0:
            return DependencyState.MISSING

        # "Python 3.11.9" goes to stdout (older releases used stderr)
        version = next((line.strip() for line in result.stdout + result.stderr if line.strip()), "")
        if version != self.interpreter_version:
            logger.info(f"🐍 Interpreter found: {version or self.settings.INTERPRETER_EXECUTABLE}")
            self.interpreter_version = version
        return DependencyState.INSTALLED

    async def check_package(self, name: Optional[str] = None) -> DependencyState:
        """Installed iff `python -c "import <name>"` exits 0."""
        name = name or self.settings.PACKAGE_IMPORT_NAME
        if not IMPORT_NAME.fullmatch(name):
            raise ValueError(f"Not an importable module name: {name!r}")

        result = await self._run_probe([self.settings.INTERPRETER_EXECUTABLE, "-c", f"import {name}"])
        if result is None or result.returncode != 0:
            return DependencyState.MISSING
        return DependencyState.INSTALLED

    async def check_model(self) -> DependencyState:
        found = await asyncio.to_thread(self._find_model_root)
        if found is None:
            return DependencyState.MISSING
        logger.debug(f"Model files found under {found}")
        return DependencyState.INSTALLED

    def model_search_paths(self) -> list[Path]:
        if self._model_search_paths is not None:
            return list(self._model_search_paths)

        name = self.settings.MODEL_DIR_NAME
        data_dir = platform_data_dir()
        candidates = [
            Path.home() / f".{name}",
            data_dir / name,
            data_dir / name / self.settings.MODEL_VERSION,
            *(Path(p).expanduser() for p in self.settings.MODEL_SEARCH_PATHS),
            model_install_dir(self.settings),
        ]
        home_override = os.environ.get(self.settings.MODEL_HOME_ENV_VAR)
        if home_override:
            candidates.append(Path(home_override))

        unique: list[Path] = []
        for path in candidates:
            if path not in unique:
                unique.append(path)
        return unique

    def _find_model_root(self) -> Optional[Path]:
        for root in self.model_search_paths():
            if contains_model_files(root, self.settings.MODEL_FILE_EXTENSION):
                return root
        return None

    async def _run_probe(self, args: list[str]):
        try:
            result = await self.runner.run(args, timeout=self.settings.PROBE_TIMEOUT_SECONDS)
        except ProvisioningBaseException as e:
            self._log_ambiguous(args, e.message)
            return None

        if result.timed_out:
            self._log_ambiguous(args, f"no answer within {self.settings.PROBE_TIMEOUT_SECONDS}s")
            return None
        return result

    @staticmethod
    def _log_ambiguous(args: list[str], reason: str) -> None:
        error = DetectionAmbiguousError(
            f"Probe '{' '.join(args)}' inconclusive: {reason}",
            context={"args": args}
        )
        logger.warning(f"⚠️ {error.message} - treating as missing")
