"""
Validation of packaging submissions.
Every violated constraint is collected so the caller can fix them in one go.
"""
from __future__ import annotations
from pathlib import PurePosixPath
from typing import Iterable, Optional

from .config import PLATFORMS
from .errors import NotFoundError, ValidationError
from .models import UNSAFE_NAME_CHARS, BuildTree, PackagingOptions
from .storage import SessionStore
from .versioning import VersionGate, is_valid


class SubmissionValidator:
    """
    Checks a submission before any work starts:
    {
        "session_id": resolvable in the session store,
        "platforms": non-empty, known tags,
        "options": app_name, app_version, icon inside the tree, executable a plain file name,
        "options.platform_versions": accepted by the version gate
    }
    """

    def __init__(self, sessions: SessionStore, gate: VersionGate, known_platforms: Iterable[str] = PLATFORMS):
        self.sessions = sessions
        self.gate = gate
        self.known_platforms = tuple(known_platforms)

    def validate(self, session_id: str, platforms: Iterable[str], options: PackagingOptions) -> tuple[BuildTree, list[str]]:
        """
        Validate a submission.
        Returns (build tree, deduplicated platform list) or raises ValidationError.
        """
        errors: list[str] = []

        requested = self._dedupe(platforms)
        if not requested:
            errors.append("At least one platform is required")
        unknown = [p for p in requested if p not in self.known_platforms]
        if unknown:
            errors.append(f"Unknown platforms: {', '.join(unknown)} (known: {', '.join(self.known_platforms)})")

        tree: Optional[BuildTree] = None
        if not session_id:
            errors.append("session_id is required")
        else:
            try:
                tree = self.sessions.resolve(session_id)
            except NotFoundError as e:
                errors.append(str(e))

        if not options.app_name:
            errors.append("app_name is required")
        elif not self._plain_name(options.app_name, display=True):
            errors.append(f"app_name must not contain path separators, '..' or control characters, got {options.app_name!r}")
        if options.executable is not None and not self._plain_name(options.executable):
            errors.append(f"executable must be a plain file name, got {options.executable!r}")
        if not options.app_version:
            errors.append("app_version is required")
        elif not is_valid(options.app_version):
            errors.append(f"app_version must be dot-separated numbers, got {options.app_version!r}")

        if options.icon:
            icon = PurePosixPath(options.icon.replace("\\", "/"))
            if icon.is_absolute() or ".." in icon.parts:
                errors.append(f"icon must be a path inside the build tree, got {options.icon!r}")

        for platform in requested:
            version = options.platform_versions.get(platform)
            if version is None:
                continue
            if not is_valid(version):
                errors.append(f"{platform}: invalid version {version!r}")
                continue
            if not self.gate.is_compatible(platform, version):
                errors.append(f"{platform}: version {version} is older than packager version {self.gate.get_version(platform)}")
                continue
            record = self.gate.compatibility(version)
            if record is not None and not record.supported:
                errors.append(f"{platform}: version {version} is no longer supported")

        if errors:
            raise ValidationError(errors)
        return tree, requested

    @staticmethod
    def _plain_name(value: str, display: bool = False) -> bool:
        """A single path component: no separators, no '..', no control characters."""
        if not value or "/" in value or "\\" in value or ".." in value:
            return False
        if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
            return False
        if display:
            return True
        return not UNSAFE_NAME_CHARS.search(value) and not value.startswith(".")

    @staticmethod
    def _dedupe(platforms: Iterable[str]) -> list[str]:
        seen: list[str] = []
        for p in platforms or []:
            tag = str(p).strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen
