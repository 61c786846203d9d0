"""Locate files beneath the root where the NVIDIA driver is installed."""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass

_LIBRARY_SEARCH_PATHS = (
    "/usr/lib64",
    "/usr/lib/x86_64-linux-gnu",
    "/usr/lib/aarch64-linux-gnu",
    "/lib64",
    "/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu",
)


def _join(*parts: str) -> str:
    """Join path elements, treating absolute elements as relative, then clean."""
    present = [part for part in parts if part]
    if not present:
        return ""
    joined = posixpath.normpath("/".join(present))
    if joined.startswith("//"):
        joined = "/" + joined.lstrip("/")
    return joined


def resolve_link(path: str) -> str:
    """Return the fully resolved target of ``path``, like ``readlink -f``."""
    try:
        return os.path.realpath(path, strict=True)
    except OSError as exc:
        raise OSError(exc.errno, f"error resolving link '{path}': {exc.strerror or exc}") from exc


@dataclass(frozen=True)
class DriverRoot:
    """A driver installation root such as ``/`` or ``/run/nvidia/driver``."""

    path: str

    def __str__(self) -> str:
        return self.path

    def join(self, *args: str) -> str:
        """Join ``args`` beneath the root."""
        return _join(self.path, *args)

    def dev_root(self) -> str:
        """Return the root if it holds a /dev folder, otherwise ``/``."""
        return self.path if self.is_dev_root() else "/"

    def is_dev_root(self) -> bool:
        """Return True if the root contains a ``dev`` directory."""
        return os.path.isdir(_join(self.path, "dev"))

    def try_resolve_library(self, library_name: str) -> str:
        """Find ``library_name`` beneath the root, or return the bare name."""
        if self.path in ("", "/"):
            return library_name
        for directory in _LIBRARY_SEARCH_PATHS:
            try:
                return resolve_link(self.join(directory, library_name))
            except OSError:
                continue
        return library_name