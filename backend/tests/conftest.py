"""Shared fixtures: fast settings rooted in tmp_path, and fakes for the probe and installers."""

import asyncio
import sys

import pytest

from provisioner.config import Settings
from provisioner.models.provisioning import DependencyKind, DependencyState
from provisioner.services.provisioning_service import ProvisioningService


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        LOG_DIR=str(tmp_path / "logs"),
        TEMP_DIR=str(tmp_path / "sessions"),
        MODEL_INSTALL_DIR=str(tmp_path / "models"),
        INTERPRETER_EXECUTABLE=sys.executable,
        PROBE_TIMEOUT_SECONDS=10.0,
        PROBE_RETRY_DELAY_SECONDS=0.0,
        PROGRESS_TICK_SECONDS=0.01,
        CLEANUP_MAX_ATTEMPTS=3,
        CLEANUP_RETRY_DELAY_SECONDS=0.01,
        DOWNLOAD_MAX_ATTEMPTS=3,
        DOWNLOAD_RETRY_DELAY_SECONDS=0.01,
        PACKAGE_RETRY_DELAY_SECONDS=0.01,
        DOWNLOAD_CHUNK_SIZE=4,
        CHECK_ON_STARTUP=False,
        IGNORE_ENVIRONMENT_CHECK=False,
    )


class FakeProbe:
    """Answers from a dict; records which kinds were probed."""

    def __init__(self, **states):
        self.states = {kind: DependencyState.MISSING for kind in DependencyKind}
        for name, state in states.items():
            self.states[DependencyKind(name)] = state
        self.calls: list[DependencyKind] = []

    async def check(self, kind):
        self.calls.append(kind)
        await asyncio.sleep(0)
        return self.states[kind]


class FakeInstaller:
    """
    Writes a scratch file into the session dir, replays output lines, and
    optionally blocks until cancelled or raises a configured error. On
    success it flips the fake probe to Installed unless `verify` is off.
    """

    def __init__(self, kind, probe, lines=(), error=None, block=False, verify=True):
        self.kind = kind
        self.probe = probe
        self.lines = list(lines)
        self.error = error
        self.block = block
        self.verify = verify
        self.calls = 0
        self.uninstalled = 0
        self.started = asyncio.Event()

    async def install(self, session):
        self.calls += 1
        (session.work_dir / "partial.bin").write_bytes(b"half a download")
        self.started.set()

        for line in self.lines:
            session.report_line(line)
            await asyncio.sleep(0.005)

        if self.block:
            await session.cancel_event.wait()
            session.raise_if_cancelled()

        if self.error is not None:
            raise self.error
        if self.verify:
            self.probe.states[self.kind] = DependencyState.INSTALLED

    async def uninstall(self):
        self.uninstalled += 1
        self.probe.states[self.kind] = DependencyState.MISSING


@pytest.fixture
def fake_probe():
    return FakeProbe()


@pytest.fixture
def fake_installers(fake_probe):
    return {kind: FakeInstaller(kind, fake_probe) for kind in DependencyKind}


@pytest.fixture
def service(test_settings, fake_probe, fake_installers):
    return ProvisioningService(test_settings, probe=fake_probe, installers=fake_installers)
