import asyncio
import os
import sys
import time
from pathlib import Path

import psutil
import pytest

from provisioner.core.exceptions import ExecutableNotFoundError
from provisioner.services.process_runner import ProcessRunner

PY = sys.executable


def _gone(pid: int, timeout: float = 5.0) -> bool:
    """Process no longer running (a zombie nobody has reaped counts as gone)."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


@pytest.mark.asyncio
async def test_run_streams_stdout_and_stderr_lines():
    seen = []
    result = await ProcessRunner().run(
        [PY, "-c", "import sys; print('one'); print('two'); print('oops', file=sys.stderr)"],
        on_line=lambda line, stream: seen.append((stream, line)),
    )

    assert result.ok
    assert result.returncode == 0
    assert result.stdout == ["one", "two"]
    assert result.stderr == ["oops"]
    assert ("stdout", "one") in seen
    assert ("stderr", "oops") in seen


@pytest.mark.asyncio
async def test_non_zero_exit_is_reported_not_raised():
    result = await ProcessRunner().run([PY, "-c", "import sys; sys.exit(3)"])
    assert result.returncode == 3
    assert not result.ok
    assert not result.timed_out


@pytest.mark.asyncio
async def test_timeout_kills_process():
    started = time.monotonic()
    result = await ProcessRunner().run([PY, "-c", "import time; time.sleep(30)"], timeout=0.5)

    assert result.timed_out
    assert not result.ok
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_cancel_event_kills_silent_process():
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.3, cancel.set)

    result = await ProcessRunner().run([PY, "-c", "import time; time.sleep(30)"], cancel_event=cancel)

    assert result.cancelled
    assert not result.timed_out
    assert result.returncode != 0


@pytest.mark.asyncio
async def test_cancel_event_checked_per_line():
    cancel = asyncio.Event()
    lines = []

    def on_line(line, stream):
        lines.append(line)
        if len(lines) == 3:
            cancel.set()

    script = "import time\nfor i in range(1000):\n    print(i, flush=True)\n    time.sleep(0.01)"
    result = await ProcessRunner().run([PY, "-c", script], on_line=on_line, cancel_event=cancel)

    assert result.cancelled
    assert len(lines) < 1000


@pytest.mark.asyncio
async def test_kill_tree_takes_descendants_down():
    script = (
        "import subprocess, sys, time\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(child.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    cancel = asyncio.Event()
    child_pids = []

    def on_line(line, stream):
        if stream == "stdout" and line.strip().isdigit():
            child_pids.append(int(line))
            cancel.set()

    result = await ProcessRunner().run([PY, "-c", script], on_line=on_line, cancel_event=cancel, timeout=30)

    assert result.cancelled
    assert child_pids
    assert _gone(child_pids[0])


@pytest.mark.asyncio
async def test_kill_is_idempotent_after_exit():
    runner = ProcessRunner()
    handle = await runner.start([PY, "-c", "pass"])
    await handle.wait()

    handle.kill(tree=True)
    handle.kill(tree=True)

    assert handle.exited


@pytest.mark.asyncio
async def test_missing_executable_raises_typed_error(tmp_path):
    with pytest.raises(ExecutableNotFoundError):
        await ProcessRunner().run([str(tmp_path / "no-such-python"), "--version"])


@pytest.mark.asyncio
async def test_env_and_cwd_are_passed_through(tmp_path):
    env = {**os.environ, "PROVISIONER_MARKER": "hello"}
    result = await ProcessRunner().run(
        [PY, "-c", "import os; print(os.environ['PROVISIONER_MARKER']); print(os.getcwd())"],
        env=env,
        cwd=tmp_path,
    )

    assert result.ok, result.output
    assert result.stdout[0] == "hello"
    assert Path(result.stdout[1]).resolve() == tmp_path.resolve()
