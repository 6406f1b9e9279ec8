import sys

import pytest

from provisioner.core.exceptions import ExecutableNotFoundError
from provisioner.models.provisioning import DependencyKind, DependencyState
from provisioner.services.probe_service import DependencyProbe, contains_model_files
from provisioner.services.process_runner import ProcessResult


class ScriptedRunner:
    """Returns (or raises) queued outcomes in order and records the args it saw."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def run(self, args, timeout=None, **kwargs):
        self.calls.append(list(args))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _result(returncode=0, stdout=(), stderr=(), timed_out=False):
    return ProcessResult(
        args=[],
        returncode=returncode,
        stdout=list(stdout),
        stderr=list(stderr),
        timed_out=timed_out,
    )


@pytest.mark.asyncio
async def test_interpreter_installed_records_version(test_settings):
    runner = ScriptedRunner(_result(stdout=["Python 3.11.9"]))
    probe = DependencyProbe(test_settings, runner=runner)

    assert await probe.check(DependencyKind.INTERPRETER) == DependencyState.INSTALLED
    assert probe.interpreter_version == "Python 3.11.9"
    assert runner.calls == [[sys.executable, "--version"]]


@pytest.mark.asyncio
async def test_missing_interpreter_is_retried_once_then_missing(test_settings):
    runner = ScriptedRunner(
        ExecutableNotFoundError("not on PATH"),
        ExecutableNotFoundError("not on PATH"),
    )
    probe = DependencyProbe(test_settings, runner=runner)

    assert await probe.check(DependencyKind.INTERPRETER) == DependencyState.MISSING
    assert len(runner.calls) == 2


@pytest.mark.asyncio
async def test_probe_timeout_counts_as_missing(test_settings):
    runner = ScriptedRunner(_result(returncode=-9, timed_out=True), _result(returncode=-9, timed_out=True))
    probe = DependencyProbe(test_settings, runner=runner)

    assert await probe.check(DependencyKind.PACKAGE) == DependencyState.MISSING


@pytest.mark.asyncio
async def test_package_found_on_retry(test_settings):
    runner = ScriptedRunner(
        _result(returncode=1, stderr=["ModuleNotFoundError: No module named 'cnocr'"]),
        _result(returncode=0),
    )
    probe = DependencyProbe(test_settings, runner=runner)

    assert await probe.check(DependencyKind.PACKAGE) == DependencyState.INSTALLED
    assert runner.calls[0] == [sys.executable, "-c", "import cnocr"]
    assert len(runner.calls) == 2


@pytest.mark.asyncio
async def test_package_probe_against_real_interpreter(test_settings):
    probe = DependencyProbe(test_settings)

    assert await probe.check_package("json") == DependencyState.INSTALLED
    assert await probe.check_package("surely_not_a_module_xyz") == DependencyState.MISSING


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["cnocr; rm -rf /", "1abc", "a..b", "cnocr\n"])
async def test_package_name_must_be_importable_identifier(test_settings, name):
    probe = DependencyProbe(test_settings, runner=ScriptedRunner())
    with pytest.raises(ValueError):
        await probe.check_package(name)


@pytest.mark.asyncio
async def test_model_scan_finds_nested_onnx(test_settings, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    models = tmp_path / "cnocr-home"
    (models / "2.3" / "densenet_lite_136-gru").mkdir(parents=True)
    (models / "2.3" / "densenet_lite_136-gru" / "cnocr-v2.3-densenet_lite_136-gru-epoch=004.onnx").write_bytes(b"onnx")

    runner = ScriptedRunner()
    probe = DependencyProbe(test_settings, runner=runner, model_search_paths=[tmp_path / "nowhere", empty, models])

    assert await probe.check(DependencyKind.MODEL) == DependencyState.INSTALLED
    assert runner.calls == []


@pytest.mark.asyncio
async def test_model_scan_ignores_other_files(test_settings, tmp_path):
    models = tmp_path / "cnocr-home"
    models.mkdir()
    (models / "README.txt").write_text("no weights here")
    (models / "weights.onnx.part").write_bytes(b"half")

    probe = DependencyProbe(test_settings, model_search_paths=[models])

    assert await probe.check(DependencyKind.MODEL) == DependencyState.MISSING


def test_default_search_paths_include_install_dir(test_settings, monkeypatch, tmp_path):
    monkeypatch.setenv(test_settings.MODEL_HOME_ENV_VAR, str(tmp_path / "override"))
    paths = DependencyProbe(test_settings).model_search_paths()

    assert paths[-2:] == [tmp_path / "models", tmp_path / "override"]
    assert len(paths) == len(set(paths))


def test_contains_model_files_handles_missing_root(tmp_path):
    assert contains_model_files(tmp_path / "missing", ".onnx") is False
