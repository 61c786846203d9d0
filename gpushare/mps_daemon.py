"""Start, stop and talk to an MPS control daemon for one resource."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Protocol, Sequence

from gpushare.log_tailer import Tailer
from gpushare.mps_root import Root

log = logging.getLogger(__name__)

MPS_CONTROL_BIN = "nvidia-cuda-mps-control"

COMPUTE_MODE_EXCLUSIVE_PROCESS = "EXCLUSIVE_PROCESS"
COMPUTE_MODE_DEFAULT = "DEFAULT"

UNPRIVILEGED_CONTAINER_SELINUX_LABEL = "system_u:object_r:container_file_t:s0"

SELINUX_FS_PATH = "/sys/fs/selinux"


class _Device(Protocol):
    index: str
    uuid: str
    total_memory: int


class ResourceManager(Protocol):
    """What a daemon needs from the manager of one Kubernetes resource."""

    resource: str

    def devices(self) -> Sequence[_Device]:
        """Return the (possibly replicated) devices the resource makes available."""
        ...


class DaemonError(Exception):
    """Raised when the MPS daemon cannot be started, stopped or reached."""


def _executable(name: str) -> str:
    return shutil.which(name) or name


def set_selinux_context(path: str, context: str) -> None:
    """Label ``path`` and everything below it with ``context`` if SELinux is on."""
    try:
        os.stat(SELINUX_FS_PATH)
    except FileNotFoundError:
        log.info("SELinux disabled, not updating context: path=%s", path)
        return
    except OSError as exc:
        raise DaemonError(f"error checking if SELinux is enabled: {exc}") from exc

    log.info("SELinux enabled, setting context: path=%s context=%s", path, context)
    label = context.encode()
    try:
        os.setxattr(path, "security.selinux", label, follow_symlinks=False)
        for dirpath, dirnames, filenames in os.walk(path):
            for name in (*dirnames, *filenames):
                os.setxattr(
                    os.path.join(dirpath, name), "security.selinux", label, follow_symlinks=False
                )
    except OSError as exc:
        raise DaemonError(f"error setting SELinux context: {exc}") from exc


class Daemon:
    """An MPS control daemon serving the devices of one resource.

    It sets the compute mode of its devices, starts the daemon, applies
    per-device memory and thread limits, and tails the daemon's log.
    """

    def __init__(self, resource_manager: ResourceManager, root: Root) -> None:
        self.resource_manager = resource_manager
        self.root = root
        self._log_tailer: Tailer | None = None

    @property
    def resource(self) -> str:
        return self.resource_manager.resource

    def devices(self) -> list[_Device]:
        """Return the devices under the control of this daemon."""
        return list(self.resource_manager.devices())

    def _uuids(self) -> list[str]:
        return list(dict.fromkeys(device.uuid for device in self.devices()))

    def env_vars(self) -> dict[str, str]:
        """Return the environment clients need to reach this daemon."""
        return {
            "CUDA_MPS_PIPE_DIRECTORY": self.pipe_dir(),
            "CUDA_MPS_LOG_DIRECTORY": self.log_dir(),
        }

    def log_dir(self) -> str:
        return self.root.log_dir(self.resource)

    def pipe_dir(self) -> str:
        return self.root.pipe_dir(self.resource)

    def shm_dir(self) -> str:
        return "/dev/shm"

    def _started_file(self) -> str:
        return self.root.started_file(self.resource)

    def start(self) -> None:
        """Start the daemon in the background and apply its limits."""
        try:
            self._set_compute_mode(COMPUTE_MODE_EXCLUSIVE_PROCESS)
        except DaemonError as exc:
            raise DaemonError(
                f"error setting compute mode {COMPUTE_MODE_EXCLUSIVE_PROCESS}: {exc}"
            ) from exc

        log.info("Starting MPS daemon: resource=%s", self.resource)

        pipe_dir = self.pipe_dir()
        try:
            os.makedirs(pipe_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise DaemonError(f"error creating directory {pipe_dir}: {exc}") from exc

        set_selinux_context(pipe_dir, UNPRIVILEGED_CONTAINER_SELINUX_LABEL)

        log_dir = self.log_dir()
        try:
            os.makedirs(log_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise DaemonError(f"error creating directory {log_dir}: {exc}") from exc

        try:
            result = subprocess.run(
                [_executable(MPS_CONTROL_BIN), "-d"], env=self.env_vars(), check=False
            )
        except OSError as exc:
            raise DaemonError(f"error starting MPS control daemon: {exc}") from exc
        if result.returncode != 0:
            raise DaemonError(f"MPS control daemon exited with status {result.returncode}")

        for index, limit in self.per_device_pinned_memory_limits().items():
            try:
                self.echo_pipe_to_control(f"set_default_device_pinned_mem_limit {index} {limit}")
            except DaemonError as exc:
                raise DaemonError(
                    f"error setting pinned memory limit for device {index}: {exc}"
                ) from exc

        percentage = self.active_thread_percentage()
        if percentage:
            try:
                self.echo_pipe_to_control(f"set_default_active_thread_percentage {percentage}")
            except DaemonError as exc:
                raise DaemonError(f"error setting active thread percentage: {exc}") from exc

        try:
            with open(self._started_file(), "w"):
                pass
        except OSError as exc:
            raise DaemonError(f"error creating started file: {exc}") from exc

        self._log_tailer = Tailer(os.path.join(log_dir, "control.log"))
        log.info("Starting log tailer: resource=%s", self.resource)
        try:
            self._log_tailer.start()
        except OSError as exc:
            log.error("Could not start tail command on control.log; ignoring logs: %s", exc)

    def stop(self) -> None:
        """Quit the daemon and restore the default compute mode."""
        try:
            self.echo_pipe_to_control("quit")
        except DaemonError as exc:
            raise DaemonError(f"error sending quit message: {exc}") from exc
        log.info("Stopped MPS control daemon: resource=%s", self.resource)

        if self._log_tailer is not None:
            status = self._log_tailer.stop()
            log.info("Stopped log tailer: resource=%s status=%s", self.resource, status)
            self._log_tailer = None

        try:
            self._set_compute_mode(COMPUTE_MODE_DEFAULT)
        except DaemonError as exc:
            raise DaemonError(f"error setting compute mode {COMPUTE_MODE_DEFAULT}: {exc}") from exc

        try:
            os.remove(self._started_file())
        except OSError as exc:
            raise DaemonError(f"failed to remove started file: {exc}") from exc

        log_dir = self.log_dir()
        try:
            shutil.rmtree(log_dir)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.error("Failed to remove log directory %s: %s", log_dir, exc)

    def assert_healthy(self) -> None:
        """Raise DaemonError if the daemon does not answer a query."""
        self.echo_pipe_to_control("get_default_active_thread_percentage")

    def echo_pipe_to_control(self, command: str) -> str:
        """Send ``command`` to the daemon and return what it printed."""
        try:
            result = subprocess.run(
                [_executable(MPS_CONTROL_BIN)],
                input=command,
                stdout=subprocess.PIPE,
                env=self.env_vars(),
                text=True,
                check=False,
            )
        except OSError as exc:
            raise DaemonError(f"failed to start NVIDIA MPS command: {exc}") from exc
        if result.returncode != 0:
            raise DaemonError(
                f"failed to send command to MPS daemon: exit status {result.returncode}"
            )
        return result.stdout or ""

    def _set_compute_mode(self, mode: str) -> None:
        for uuid in self._uuids():
            try:
                result = subprocess.run(
                    ["nvidia-smi", "-i", uuid, "-c", mode],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    check=False,
                )
            except OSError as exc:
                raise DaemonError(f"error running nvidia-smi: {exc}") from exc
            if result.returncode != 0:
                log.error("\n%s", result.stdout)
                raise DaemonError(
                    f"error running nvidia-smi: exit status {result.returncode}"
                )

    def per_device_pinned_memory_limits(self) -> dict[str, str]:
        """Return each device's pinned memory limit, its memory split over its replicas."""
        total_memory: dict[str, int] = {}
        replicas: dict[str, int] = {}
        for device in self.devices():
            total_memory[device.index] = device.total_memory
            replicas[device.index] = replicas.get(device.index, 0) + 1

        return {
            index: f"{memory // replicas[index] // 1024 // 1024}M"
            for index, memory in total_memory.items()
            if memory != 0
        }

    def active_thread_percentage(self) -> str:
        """Return the share of threads each replica gets, or "" with no devices."""
        devices = self.devices()
        if not devices:
            return ""
        replicas_per_device = len(devices) // len(self._uuids())
        return str(100 // replicas_per_device)