import subprocess
from unittest import mock

import pytest

from gpushare.shm_mount import (
    FALLBACK_SHM_SIZE,
    MountError,
    default_shm_size,
    main,
    mount_shm,
)


def _meminfo(tmp_path, text):
    path = tmp_path / "meminfo"
    path.write_text(text)
    return str(path)


def test_default_size_is_half_with_unit_letter(tmp_path):
    path = _meminfo(tmp_path, "MemFree:  12 kB\nMemTotal:       1000 kB\n")
    assert default_shm_size(path) == "500k"


def test_default_size_truncates_odd_values(tmp_path):
    path = _meminfo(tmp_path, "MemTotal: 1001 kB\n")
    assert default_shm_size(path) == "500k"


def test_default_size_without_unit(tmp_path):
    path = _meminfo(tmp_path, "MemTotal: 10\n")
    assert default_shm_size(path) == "5"


def test_missing_file_falls_back(tmp_path):
    assert default_shm_size(str(tmp_path / "absent")) == "65536k"


def test_missing_memtotal_falls_back(tmp_path):
    path = _meminfo(tmp_path, "MemFree: 100 kB\n")
    assert default_shm_size(path) == FALLBACK_SHM_SIZE


def test_non_integer_memtotal_falls_back(tmp_path):
    path = _meminfo(tmp_path, "MemTotal: lots kB\n")
    assert default_shm_size(path) == FALLBACK_SHM_SIZE


def test_mount_shm_without_mount_executable():
    with mock.patch("shutil.which", return_value=None):
        with pytest.raises(MountError, match="error finding 'mount' executable"):
            mount_shm("/nonexistent/shm")


def test_mount_shm_creates_dir_and_mounts(tmp_path):
    shm_dir = tmp_path / "shm"
    shm_dir.mkdir()
    done = subprocess.CompletedProcess([], 0, "", "")
    with mock.patch("shutil.which", return_value="/bin/mount"), \
            mock.patch("subprocess.run", return_value=done) as run:
        mount_shm(str(shm_dir))
    assert shm_dir.is_dir()
    args = run.call_args[0][0]
    assert args[:4] == ["/bin/mount", "-t", "tmpfs", "-o"]
    assert args[4].startswith("rw,nosuid,nodev,noexec,relatime,size=")
    assert args[5:] == ["shm", str(shm_dir)]


def test_mount_failure_is_reported(tmp_path):
    failed = subprocess.CompletedProcess([], 32, "", "permission denied")
    with mock.patch("shutil.which", return_value="/bin/mount"), \
            mock.patch("subprocess.run", return_value=failed):
        with pytest.raises(MountError, match="as tmpfs"):
            mount_shm(str(tmp_path / "shm"))


def test_non_empty_existing_dir_cannot_be_cleaned(tmp_path):
    shm_dir = tmp_path / "shm"
    shm_dir.mkdir()
    (shm_dir / "file").write_text("x")
    with mock.patch("shutil.which", return_value="/bin/mount"):
        with pytest.raises(MountError, match="error unmounting"):
            mount_shm(str(shm_dir))


def test_main_returns_one_on_error():
    with mock.patch("shutil.which", return_value=None):
        assert main([]) == 1