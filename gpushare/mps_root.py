"""Paths under the root where MPS pipe, log and shm directories live."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass


@dataclass(frozen=True)
class Root:
    """An MPS root; for containers the host root is usually mounted at /mps."""

    root: str

    def __str__(self) -> str:
        return self.root

    def path(self, *args: str) -> str:
        """Return a cleaned path made of the root followed by ``args``."""
        parts = [part for part in (self.root, *args) if part]
        if not parts:
            return ""
        joined = posixpath.normpath("/".join(parts))
        if joined.startswith("//"):
            joined = "/" + joined.lstrip("/")
        return joined

    def log_dir(self, resource_name: str) -> str:
        """Return the log directory for a resource."""
        return self.path(resource_name, "log")

    def pipe_dir(self, resource_name: str) -> str:
        """Return the pipe directory for a resource."""
        return self.path(resource_name, "pipe")

    def shm_dir(self, resource_name: str) -> str:
        """Return the shm directory; it is shared by all resources."""
        return self.path("shm")

    def started_file(self, resource_name: str) -> str:
        """Return the path of the file marking a resource's daemon as started."""
        return self.path(resource_name, ".started")


CONTAINER_ROOT = Root("/mps")