import errno
import shutil

import pytest

from provisioner.services.cleanup_service import CleanupManager, is_lock_error


@pytest.fixture
def cleanup(test_settings):
    return CleanupManager(test_settings)


def _make_session_dir(root):
    root.mkdir(parents=True)
    (root / "installer.exe.part").write_bytes(b"\0" * 16)
    (root / "nested").mkdir()
    (root / "nested" / "pip-build.log").write_text("log")
    return root


@pytest.mark.asyncio
async def test_remove_deletes_files_and_trees(cleanup, tmp_path):
    session_dir = _make_session_dir(tmp_path / "session")
    loose_file = tmp_path / "model.zip.part"
    loose_file.write_bytes(b"zip")

    result = await cleanup.remove([session_dir, loose_file])

    assert result.ok
    assert set(result.removed) == {session_dir, loose_file}
    assert not session_dir.exists()
    assert not loose_file.exists()


@pytest.mark.asyncio
async def test_remove_is_idempotent(cleanup, tmp_path):
    session_dir = _make_session_dir(tmp_path / "session")

    first = await cleanup.remove([session_dir])
    second = await cleanup.remove([session_dir])

    assert first.removed == [session_dir]
    assert second.removed == []
    assert second.missing == [session_dir]
    assert second.ok


@pytest.mark.asyncio
async def test_locked_path_is_left_behind_not_raised(cleanup, tmp_path, monkeypatch):
    session_dir = _make_session_dir(tmp_path / "session")
    attempts = []

    def locked_rmtree(path, *args, **kwargs):
        attempts.append(path)
        raise PermissionError(errno.EACCES, "The process cannot access the file", str(path))

    monkeypatch.setattr(shutil, "rmtree", locked_rmtree)

    result = await cleanup.remove([session_dir])

    assert not result.ok
    assert result.left_behind == [session_dir]
    assert len(attempts) == 3  # CLEANUP_MAX_ATTEMPTS
    assert session_dir.exists()


@pytest.mark.asyncio
async def test_lock_released_between_retries(cleanup, tmp_path, monkeypatch):
    session_dir = _make_session_dir(tmp_path / "session")
    real_rmtree = shutil.rmtree
    calls = []

    def flaky_rmtree(path, *args, **kwargs):
        calls.append(path)
        if len(calls) == 1:
            raise OSError(errno.EBUSY, "Device or resource busy", str(path))
        return real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(shutil, "rmtree", flaky_rmtree)

    result = await cleanup.remove([session_dir])

    assert result.ok
    assert result.removed == [session_dir]
    assert len(calls) == 2
    assert not session_dir.exists()


@pytest.mark.asyncio
async def test_non_lock_errors_propagate(cleanup, tmp_path, monkeypatch):
    session_dir = _make_session_dir(tmp_path / "session")

    def readonly_fs(path, *args, **kwargs):
        raise OSError(errno.EROFS, "Read-only file system", str(path))

    monkeypatch.setattr(shutil, "rmtree", readonly_fs)

    with pytest.raises(OSError):
        await cleanup.remove([session_dir])


@pytest.mark.asyncio
async def test_sweep_stale_sessions_keeps_current(cleanup, tmp_path):
    kind_root = tmp_path / "sessions" / "package"
    stale = _make_session_dir(kind_root / "deadbeef")
    current = _make_session_dir(kind_root / "cafebabe")

    result = await cleanup.sweep_stale_sessions(kind_root, keep="cafebabe")

    assert result.removed == [stale]
    assert not stale.exists()
    assert current.exists()


@pytest.mark.asyncio
async def test_sweep_without_kind_root_is_a_no_op(cleanup, tmp_path):
    result = await cleanup.sweep_stale_sessions(tmp_path / "never-created")
    assert result.ok
    assert result.removed == []


def test_is_lock_error():
    assert is_lock_error(PermissionError(errno.EACCES, "denied"))
    assert is_lock_error(OSError(errno.EBUSY, "busy"))
    assert not is_lock_error(OSError(errno.ENOSPC, "disk full"))
    assert not is_lock_error(FileNotFoundError(errno.ENOENT, "gone"))
