"""MPS-specific checks on a device shared between several clients."""

from __future__ import annotations

import re
from dataclasses import dataclass

_NUM = r"(0|[1-9][0-9]*)"
_IDENT = r"[0-9A-Za-z-]+"
_SEMVER = re.compile(
    rf"^v{_NUM}(?:\.{_NUM}(?:\.{_NUM}"
    rf"(?:-({_IDENT}(?:\.{_IDENT})*))?"
    rf"(?:\+({_IDENT}(?:\.{_IDENT})*))?)?)?$"
)

_VOLTA = "v7.5"


class InvalidDeviceError(ValueError):
    """Raised when a device is configured in a way MPS cannot serve."""


def _parse(version: str) -> tuple[int, int, int, tuple[str, ...]] | None:
    match = _SEMVER.match(version)
    if match is None:
        return None
    major, minor, patch, prerelease, _build = match.groups()
    pre: tuple[str, ...] = ()
    if prerelease:
        pre = tuple(prerelease.split("."))
        if any(p.isdigit() and len(p) > 1 and p.startswith("0") for p in pre):
            return None
    return int(major), int(minor or 0), int(patch or 0), pre


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _cmp_prerelease(a: tuple[str, ...], b: tuple[str, ...]) -> int:
    if a == b:
        return 0
    if not a:
        return 1
    if not b:
        return -1
    for x, y in zip(a, b):
        if x == y:
            continue
        x_num, y_num = x.isdigit(), y.isdigit()
        if x_num and y_num:
            return _cmp(int(x), int(y))
        if x_num != y_num:
            return -1 if x_num else 1
        return _cmp(x, y)
    return _cmp(len(a), len(b))


def compare_versions(a: str, b: str) -> int:
    """Compare two ``v``-prefixed semantic versions, returning -1, 0 or 1.

    Short forms such as ``v7`` or ``v7.5`` are accepted. An invalid version
    is less than any valid one, and two invalid versions are equal.
    """
    pa, pb = _parse(a), _parse(b)
    if pa is None and pb is None:
        return 0
    if pa is None:
        return -1
    if pb is None:
        return 1
    result = _cmp(pa[:3], pb[:3])
    if result:
        return result
    return _cmp_prerelease(pa[3], pb[3])


@dataclass
class MpsDevice:
    """A device as seen by an MPS server."""

    compute_capability: str = ""
    replicas: int = 0

    def is_at_least_volta(self) -> bool:
        """Return True if the device's compute capability is 7.5 or newer."""
        version = "v" + self.compute_capability.removeprefix("v")
        return compare_versions(version, _VOLTA) >= 0

    def max_clients(self) -> int:
        """Return the most clients an MPS server supports for this device."""
        return 48 if self.is_at_least_volta() else 16

    def assert_replicas(self) -> None:
        """Raise InvalidDeviceError if more replicas are asked for than allowed."""
        limit = self.max_clients()
        if self.replicas > limit:
            raise InvalidDeviceError(
                f"invalid device maximum allowed replicas exceeded: {self.replicas} > {limit}"
            )