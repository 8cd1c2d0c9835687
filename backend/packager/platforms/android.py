from __future__ import annotations
import json
import shutil
from pathlib import Path
from typing import Optional

from ..cancellation import CancellationToken
from ..errors import BuildToolError
from ..models import Artifact, BuildTree, PackagingOptions
from .base import PlatformPackager, ProgressSink

CAPACITOR_VERSION = "^6.0.0"


def capacitor_config(options: PackagingOptions) -> dict:
    app_id = options.extras.get("android", {}).get("app_id")
    if not app_id:
        publisher = "".join(ch for ch in (options.publisher_id or "app").lower() if ch.isalnum()) or "app"
        name = "".join(ch for ch in options.icon_name if ch.isalnum()) or "application"
        app_id = f"com.{publisher}.{name}"
    return {
        "appId": app_id,
        "appName": options.app_name,
        "webDir": "www",
        "android": {"allowMixedContent": True},
    }


class AndroidPackager(PlatformPackager):
    """Wraps the web build in a Capacitor project and assembles a debug APK with Gradle."""

    platform = "android"
    supported_formats = ("apk",)

    def tool_commands(self) -> list[str]:
        return [self.settings.CAPACITOR_CMD, self.settings.GRADLE_CMD]

    def package(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path],
    ) -> list[Artifact]:
        cap = self.command(self.settings.CAPACITOR_CMD)
        target = output_dir / f"{options.slug}-{options.app_version}.apk"

        with self.staging() as stage:
            project = stage / "project"
            progress(10, "android: copying web build")
            self.copy_tree(tree, project / "www", token)

            (project / "capacitor.config.json").write_text(json.dumps(capacitor_config(options), indent=2), encoding="utf-8")
            (project / "package.json").write_text(json.dumps({
                "name": options.icon_name,
                "version": options.app_version,
                "private": True,
                "dependencies": {"@capacitor/core": CAPACITOR_VERSION, "@capacitor/android": CAPACITOR_VERSION},
                "devDependencies": {"@capacitor/cli": CAPACITOR_VERSION},
            }, indent=2), encoding="utf-8")

            progress(25, "android: adding Android platform")
            self.run(cap + ["add", "android"], token, cwd=project, log_path=log_path)
            progress(45, "android: syncing web assets")
            self.run(cap + ["sync", "android"], token, cwd=project, log_path=log_path)

            android_dir = project / "android"
            gradlew = android_dir / "gradlew"
            gradle = [str(gradlew)] if gradlew.exists() else self.command(self.settings.GRADLE_CMD)
            progress(60, "android: assembling APK")
            self.run(gradle + ["assembleDebug"], token, cwd=android_dir, log_path=log_path)

            apks = sorted((android_dir / "app" / "build" / "outputs" / "apk").rglob("*.apk")) if android_dir.exists() else []
            if not apks:
                raise BuildToolError("gradle", 0, "no APK produced")
            shutil.copyfile(apks[0], target)

        return [Artifact.from_path("apk", target)]
