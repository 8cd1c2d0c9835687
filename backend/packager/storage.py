from __future__ import annotations
import logging
import os
import shutil
import tarfile
import threading
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable

from .config import Settings
from .errors import NotFoundError, PackagingError, QuotaError, UploadError
from .models import UNSAFE_NAME_CHARS, BuildTree, Session, utcnow

logger = logging.getLogger("packager.storage")

CHUNK_SIZE = 1024 * 1024
MB = 1024 * 1024


def sanitize_filename(name: str) -> str:
    # Remove path separators and unsafe chars
    name = name.replace("\\", "/").split("/")[-1]
    name = UNSAFE_NAME_CHARS.sub("_", name)
    return name[:200]


def archive_extension(name: str) -> str:
    lower = name.lower()
    for ext in (".tar.gz", ".tgz", ".tar", ".zip"):
        if lower.endswith(ext):
            return ext
    return Path(lower).suffix


def iter_files(root: Path) -> Iterable[Path]:
    return (p for p in root.rglob("*") if p.is_file())


def total_size(paths: Iterable[Path]) -> int:
    total = 0
    for p in paths:
        if p.is_file():
            total += p.stat().st_size
    return total


def zip_directory(src: Path, dest_zip: Path) -> None:
    dest_zip = dest_zip.resolve()
    with zipfile.ZipFile(dest_zip, "w", zipfile.ZIP_DEFLATED) as zf:
        for file in sorted(src.rglob("*")):
            if not file.is_file():
                continue
            # Skip the destination zip itself if it's under src
            if file.resolve() == dest_zip:
                continue
            zf.write(file, arcname=file.relative_to(src))


def cleanup_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)


def _copy_stream(stream: BinaryIO, dest: Path, limit: int) -> int:
    written = 0
    with dest.open("wb") as out:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if limit and written > limit:
                raise QuotaError(f"Upload exceeds limit of {limit // MB} MB")
            out.write(chunk)
    return written


def _extract_zip(archive: Path, root: Path) -> None:
    base = root.resolve()
    with zipfile.ZipFile(archive) as zf:
        members = zf.infolist()
        for info in members:
            target = (base / info.filename).resolve()
            if not target.is_relative_to(base):
                raise UploadError(f"Unsafe path in archive: {info.filename}")
        zf.extractall(base)
        # zipfile drops unix permissions; the Electron binary needs its exec bit
        for info in members:
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                os.chmod(base / info.filename, mode)


def _extract_tar(archive: Path, root: Path) -> None:
    with tarfile.open(archive) as tf:
        tf.extractall(root, filter="data")


def _unwrap_single_dir(root: Path) -> Path:
    entries = [p for p in root.iterdir() if p.name != "__MACOSX"]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return root


class SessionStore:
    """Registry of uploaded, extracted build trees. Sessions are write-once."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def load_existing(self) -> int:
        """Re-register sessions left on disk by a previous run."""
        base = self.settings.sessions_dir
        if not base.exists():
            return 0
        loaded = 0
        for session_dir in base.iterdir():
            build = session_dir / "build"
            if not build.is_dir():
                continue
            root = _unwrap_single_dir(build)
            files = list(iter_files(root))
            created = datetime.fromtimestamp(session_dir.stat().st_ctime, tz=timezone.utc)
            modified = datetime.fromtimestamp(build.stat().st_mtime, tz=timezone.utc)
            with self._lock:
                self._sessions[session_dir.name] = Session(
                    session_id=session_dir.name, root=root, created_at=created, modified_at=modified,
                    file_count=len(files), total_bytes=total_size(files),
                )
            loaded += 1
        if loaded:
            logger.info(f"Loaded {loaded} existing sessions from {base}")
        return loaded

    def create(self, stream: BinaryIO, filename: str) -> Session:
        name = sanitize_filename(filename or "build.zip")
        ext = archive_extension(name)
        if ext not in self.settings.ALLOWED_ARCHIVES:
            logger.warning(f"Upload rejected: unsupported archive {name}")
            raise UploadError(f"Unsupported archive format: {ext or name}")

        session_id = str(uuid.uuid4())
        base = self.settings.sessions_dir / session_id
        build = base / "build"
        archive = base / name
        try:
            build.mkdir(parents=True)
            written = _copy_stream(stream, archive, self.settings.MAX_UPLOAD_MB * MB)
            logger.info(f"Upload session {session_id}: {written} bytes received ({name})")
            self._check_storage(written)
            if ext == ".zip":
                _extract_zip(archive, build)
            else:
                _extract_tar(archive, build)
            archive.unlink()
            root = _unwrap_single_dir(build)
            files = list(iter_files(root))
            size = total_size(files)
            self._check_storage(size)
        except PackagingError:
            cleanup_dir(base)
            raise
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
            cleanup_dir(base)
            logger.warning(f"Upload session {session_id} failed: {e}")
            raise UploadError(f"Could not store or extract {name}: {e}") from e

        if not files:
            cleanup_dir(base)
            raise UploadError(f"Archive {name} contains no files")

        now = utcnow()
        session = Session(session_id=session_id, root=root, created_at=now, modified_at=now,
                          file_count=len(files), total_bytes=size)
        with self._lock:
            self._sessions[session_id] = session
        logger.info(f"Upload session {session_id} registered: {len(files)} files, {size} bytes")
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Unknown session: {session_id}")
        return session

    def resolve(self, session_id: str) -> BuildTree:
        session = self.get(session_id)
        if not session.root.is_dir():
            raise NotFoundError(f"Build files for session {session_id} are gone")
        return BuildTree(session_id=session_id, root=session.root, file_count=session.file_count)

    def list(self) -> list[Session]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)

    def remove(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"Unknown session: {session_id}")
        cleanup_dir(self.settings.sessions_dir / session_id)
        logger.info(f"Session {session_id} removed")

    def usage_bytes(self) -> int:
        with self._lock:
            return sum(s.total_bytes for s in self._sessions.values())

    def _check_storage(self, incoming: int) -> None:
        limit = self.settings.MAX_STORAGE_MB * MB
        if limit and self.usage_bytes() + incoming > limit:
            logger.warning(f"Upload rejected: storage quota of {self.settings.MAX_STORAGE_MB} MB exceeded")
            raise QuotaError(f"Storage quota of {self.settings.MAX_STORAGE_MB} MB exceeded")
