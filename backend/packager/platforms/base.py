from __future__ import annotations
import logging
import shlex
import shutil
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from ..cancellation import CancellationToken
from ..config import Settings
from ..errors import PackagingError
from ..models import Artifact, BuildTree, PackagingOptions, PlatformResult
from ..process import run_tool

logger = logging.getLogger("packager.platforms")

ProgressSink = Callable[[float, str], None]


class PlatformPackager(ABC):
    """
    One target platform. `build` turns a read-only build tree into artifacts
    under `output_dir`. Implementations work on a staged copy of the tree and
    pass the cancellation token to every external tool they run.
    """

    platform: str = ""
    version = "1.0.0"
    supported_formats: tuple[str, ...] = ()

    def __init__(self, settings: Settings):
        self.settings = settings

    def build(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path] = None,
    ) -> PlatformResult:
        progress(0, f"{self.platform}: starting")
        token.check()
        output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"{self.platform}: packaging {options.app_name} {options.app_version} from session {tree.session_id}")
        artifacts = self.package(tree, options, progress, token, output_dir, log_path)
        root = output_dir.resolve()
        for artifact in artifacts:
            if not artifact.path.resolve().is_relative_to(root):
                raise PackagingError(f"{self.platform}: artifact {artifact.path} is outside {output_dir}")
        logger.info(f"{self.platform}: produced {', '.join(a.filename for a in artifacts) or 'no artifacts'}")
        progress(100, f"{self.platform}: done")
        return PlatformResult.success(self.platform, artifacts)

    @abstractmethod
    def package(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path],
    ) -> list[Artifact]:
        ...

    def tool_commands(self) -> list[str]:
        """External commands this packager shells out to."""
        return []

    # helpers

    @contextmanager
    def staging(self) -> Iterator[Path]:
        """Scratch directory removed on every exit path."""
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        stage = Path(tempfile.mkdtemp(prefix=f"{self.platform}-", dir=self.settings.temp_dir))
        try:
            yield stage
        finally:
            shutil.rmtree(stage, ignore_errors=True)

    def copy_tree(self, tree: BuildTree, dest: Path, token: CancellationToken) -> Path:
        token.check()
        shutil.copytree(tree.root, dest, symlinks=True)
        token.check()
        return dest

    def run(
        self,
        cmd: Sequence[str],
        token: CancellationToken,
        *,
        cwd: Optional[Path] = None,
        env: Optional[dict] = None,
        log_path: Optional[Path] = None,
    ) -> str:
        return run_tool(
            cmd,
            token,
            cwd=cwd,
            env=env,
            log_path=log_path,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
            grace=self.settings.CANCEL_GRACE_SECONDS,
        )

    @staticmethod
    def command(configured: str) -> list[str]:
        return shlex.split(configured)

    @staticmethod
    def resolve_icon(tree: BuildTree, options: PackagingOptions) -> Optional[Path]:
        if not options.icon:
            return None
        icon = tree.root / options.icon
        return icon if icon.is_file() else None

    @staticmethod
    def collect(output_dir: Path, kinds: dict[str, str]) -> list[Artifact]:
        """Top-level files in `output_dir` whose suffix is a key of `kinds` (suffix -> artifact type)."""
        found = []
        for path in sorted(output_dir.iterdir()):
            if not path.is_file():
                continue
            for suffix, kind in kinds.items():
                if path.name.lower().endswith(suffix):
                    found.append(Artifact.from_path(kind, path))
                    break
        return found

    def check_dependencies(self) -> dict[str, bool]:
        checks = {}
        for configured in self.tool_commands():
            argv = self.command(configured)
            if not argv:
                continue
            checks[configured] = shutil.which(argv[0]) is not None
        return checks

    def info(self) -> dict:
        return {
            "platform": self.platform,
            "version": self.version,
            "supported_formats": list(self.supported_formats),
            "dependencies": self.check_dependencies(),
        }
