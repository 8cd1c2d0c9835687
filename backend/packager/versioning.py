"""
Platform packager versions and the compatibility gate consulted before dispatch.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_VERSION = "1.0.0"


def _parts(version: str) -> list[int]:
    parts = []
    for raw in str(version).strip().split("."):
        if not raw.isdigit():
            raise ValueError(f"Invalid version string: {version!r}")
        parts.append(int(raw))
    return parts


def compare(a: str, b: str) -> int:
    """Compare dotted versions; missing trailing components count as zero."""
    pa, pb = _parts(a), _parts(b)
    width = max(len(pa), len(pb))
    pa += [0] * (width - len(pa))
    pb += [0] * (width - len(pb))
    for x, y in zip(pa, pb):
        if x > y:
            return 1
        if x < y:
            return -1
    return 0


def is_valid(version: str) -> bool:
    try:
        _parts(version)
    except ValueError:
        return False
    return True


@dataclass
class Compatibility:
    supported: bool = True
    deprecated: bool = False
    migrations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"supported": self.supported, "deprecated": self.deprecated, "migrations": list(self.migrations)}


class VersionGate:
    def __init__(self, current: dict[str, str], matrix: Optional[dict[str, Compatibility]] = None):
        self.current = dict(current)
        self.matrix = matrix if matrix is not None else {DEFAULT_VERSION: Compatibility()}

    def get_version(self, platform: str) -> str:
        return self.current.get(platform, DEFAULT_VERSION)

    def is_compatible(self, platform: str, requested: str) -> bool:
        return compare(requested, self.get_version(platform)) >= 0

    def compatibility(self, version: str) -> Optional[Compatibility]:
        for known, record in self.matrix.items():
            if compare(known, version) == 0:
                return record
        return None

    def all_versions(self) -> dict[str, str]:
        return dict(self.current)
