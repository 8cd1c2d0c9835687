from __future__ import annotations
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


class Outcome(str, Enum):
    success = "success"
    failure = "failure"
    cancelled = "cancelled"


@dataclass
class Artifact:
    type: str
    filename: str
    path: Path
    size: int

    @classmethod
    def from_path(cls, type_: str, path: Path) -> "Artifact":
        return cls(type=type_, filename=path.name, path=path, size=path.stat().st_size)

    def to_dict(self) -> dict:
        return {"type": self.type, "filename": self.filename, "path": str(self.path), "size": self.size}


@dataclass
class PlatformResult:
    platform: str
    outcome: Outcome
    artifacts: list[Artifact] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None  # build_tool | timeout | cancelled | error | circuit_open
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def success(cls, platform: str, artifacts: list[Artifact]) -> "PlatformResult":
        return cls(platform=platform, outcome=Outcome.success, artifacts=list(artifacts))

    @classmethod
    def failure(cls, platform: str, error: str, kind: str = "error", exit_code: Optional[int] = None) -> "PlatformResult":
        return cls(platform=platform, outcome=Outcome.failure, error=error, error_kind=kind, exit_code=exit_code)

    @classmethod
    def cancelled(cls, platform: str, error: str = "Cancelled") -> "PlatformResult":
        return cls(platform=platform, outcome=Outcome.cancelled, error=error, error_kind="cancelled")

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.success

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "outcome": self.outcome.value,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "error": self.error,
            "error_kind": self.error_kind,
            "exit_code": self.exit_code,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
        }


UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class PackagingOptions:
    app_name: str
    app_version: str
    description: str = ""
    publisher_name: Optional[str] = None
    publisher_id: Optional[str] = None
    icon: Optional[str] = None  # path relative to the build tree
    executable: Optional[str] = None
    platform_versions: dict[str, str] = field(default_factory=dict)
    extras: dict[str, dict] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "PackagingOptions":
        return cls(
            app_name=str(data.get("app_name") or "").strip(),
            app_version=str(data.get("app_version") or "").strip(),
            description=data.get("description") or "",
            publisher_name=data.get("publisher_name"),
            publisher_id=data.get("publisher_id"),
            icon=data.get("icon"),
            executable=data.get("executable"),
            platform_versions=dict(data.get("platform_versions") or {}),
            extras=dict(data.get("extras") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "app_name": self.app_name,
            "app_version": self.app_version,
            "description": self.description,
            "publisher_name": self.publisher_name,
            "publisher_id": self.publisher_id,
            "icon": self.icon,
            "executable": self.executable,
            "platform_versions": dict(self.platform_versions),
            "extras": {k: dict(v) for k, v in self.extras.items()},
        }

    @property
    def slug(self) -> str:
        """File-system safe app name: whitespace runs become hyphens, other unsafe characters underscores."""
        slug = UNSAFE_NAME_CHARS.sub("_", re.sub(r"\s+", "-", self.app_name.strip())).lstrip(".")
        return slug or "app"

    @property
    def icon_name(self) -> str:
        return self.slug.lower()

    @property
    def executable_name(self) -> str:
        return self.executable or self.icon_name


@dataclass
class Session:
    session_id: str
    root: Path
    created_at: datetime
    modified_at: datetime
    file_count: int = 0
    total_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "created_at": _iso(self.created_at),
            "modified_at": _iso(self.modified_at),
            "file_count": self.file_count,
            "total_bytes": self.total_bytes,
        }


@dataclass(frozen=True)
class BuildTree:
    """Read-only handle on a session's extracted build."""
    session_id: str
    root: Path
    file_count: int


@dataclass
class Job:
    job_id: str
    session_id: str
    platforms: list[str]
    options: PackagingOptions
    created_at: datetime
    priority: int = 5
    retry_of: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.queued
    progress: float = 0.0
    message: str = ""
    error: Optional[str] = None
    cancel_requested: bool = False
    results: dict[str, PlatformResult] = field(default_factory=dict)
    platform_progress: dict[str, float] = field(default_factory=dict)
    output_dir: Optional[Path] = None
    log_path: Optional[Path] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    tokens: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def partial(self) -> bool:
        return self.status == JobStatus.completed and any(not r.ok for r in self.results.values())

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "job_id": self.job_id,
                "session_id": self.session_id,
                "platforms": list(self.platforms),
                "options": self.options.to_dict(),
                "priority": self.priority,
                "retry_of": self.retry_of,
                "status": self.status.value,
                "partial": self.partial,
                "progress": round(self.progress, 1),
                "platform_progress": dict(self.platform_progress),
                "message": self.message,
                "error": self.error,
                "results": {p: r.to_dict() for p, r in self.results.items()},
                "created_at": _iso(self.created_at),
                "started_at": _iso(self.started_at),
                "finished_at": _iso(self.finished_at),
            }
