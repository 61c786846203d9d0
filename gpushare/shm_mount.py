"""Set up the tmpfs mount used as shared memory by the MPS control daemon."""

from __future__ import annotations

import argparse
import logging
import os
import re
import shutil
import subprocess

log = logging.getLogger(__name__)

DEFAULT_SHM_DIR = "/mps/shm"
FALLBACK_SHM_SIZE = "65536k"

_INTEGER = re.compile(r"[+-]?[0-9]+")


class MountError(Exception):
    """Raised when the shm directory cannot be cleaned up or mounted."""


def default_shm_size(meminfo_path: str = "/proc/meminfo") -> str:
    """Return half the total memory as a tmpfs size, e.g. ``8159206k``.

    Falls back to ``65536k`` if the total memory cannot be read.
    """
    try:
        with open(meminfo_path, encoding="utf-8", errors="replace") as meminfo:
            for line in meminfo:
                line = line.rstrip("\n")
                if not line.startswith("MemTotal:"):
                    continue
                parts = line[len("MemTotal:"):].strip().split(" ", 1)
                if not _INTEGER.fullmatch(parts[0]):
                    log.error("could not convert MemTotal to an integer: %r", parts[0])
                    return FALLBACK_SHM_SIZE
                total = int(parts[0])
                half = abs(total) // 2
                if total < 0:
                    half = -half
                unit = parts[1][0] if len(parts) == 2 and parts[1] else ""
                return f"{half}{unit}"
    except OSError as exc:
        log.error("failed to open %s: %s", meminfo_path, exc)
    return FALLBACK_SHM_SIZE


def _run(args: list[str]) -> None:
    try:
        result = subprocess.run(args, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise MountError(str(exc)) from exc
    if result.returncode != 0:
        output = (result.stdout or "") + (result.stderr or "")
        raise MountError(
            f"command {' '.join(args)} failed with exit status {result.returncode}: {output.strip()}"
        )


def _cleanup_mount_point(path: str) -> None:
    if not os.path.lexists(path):
        return
    if os.path.ismount(path):
        _run([shutil.which("umount") or "umount", path])
        if os.path.ismount(path):
            raise MountError(f"failed to unmount path {path}")
    if os.path.isdir(path) and not os.path.islink(path):
        os.rmdir(path)
    else:
        os.remove(path)


def mount_shm(shm_dir: str = DEFAULT_SHM_DIR) -> None:
    """Create a fresh tmpfs mount at ``shm_dir`` sized from the total memory."""
    mount_executable = shutil.which("mount")
    if mount_executable is None:
        raise MountError("error finding 'mount' executable: executable file not found in $PATH")

    try:
        _cleanup_mount_point(shm_dir)
    except (OSError, MountError) as exc:
        raise MountError(f"error unmounting {shm_dir}: {exc}") from exc

    try:
        os.makedirs(shm_dir, mode=0o755, exist_ok=True)
    except OSError as exc:
        raise MountError(f"error creating directory {shm_dir}: {exc}") from exc

    options = ["rw", "nosuid", "nodev", "noexec", "relatime", f"size={default_shm_size()}"]
    try:
        _run([mount_executable, "-t", "tmpfs", "-o", ",".join(options), "shm", shm_dir])
    except MountError as exc:
        raise MountError(f"error mounting {shm_dir} as tmpfs: {exc}") from exc


def main(argv: list[str] | None = None) -> int:
    """Run the mount-shm command; return the process exit status."""
    parser = argparse.ArgumentParser(
        prog="mount-shm",
        description="Set up the /dev/shm mount required by the MPS daemon",
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        mount_shm()
    except MountError as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())