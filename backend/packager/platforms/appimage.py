"""
Linux packager: builds an AppImage with appimagetool around a custom AppRun.

The AppRun installs the bundled Electron app into a per-user directory on
first launch and then always starts the installed copy, so the app keeps its
state across AppImage updates.
"""
from __future__ import annotations
import os
import shutil
from pathlib import Path
from typing import Optional

from ..cancellation import CancellationToken
from ..errors import BuildToolError
from ..models import Artifact, BuildTree, PackagingOptions
from .base import PlatformPackager, ProgressSink

BUNDLE_DIR = "app"
SANDBOX_FLAGS = "--no-sandbox --disable-gpu-sandbox"

APPRUN_TEMPLATE = """#!/bin/bash

SELF=$(readlink -f "$0")
HERE=${{SELF%/*}}

APP_NAME="{app_name}"
APP_VERSION="{app_version}"
PUBLISHER_NAME="{publisher_name}"
PUBLISHER_ID="{publisher_id}"

basepath={install_root}
appPath="$basepath/$APP_NAME"
executablePath="$appPath/{executable}"

# one-time install; later runs find the executable and skip the copy
if [ ! -f "$executablePath" ]; then
    echo "-> first run, installing to $appPath"
    mkdir -p "$appPath"
    cp -r "$HERE/{bundle}/"* "$appPath/"
    chmod +x "$executablePath"
fi

exec "$executablePath" "$@" {flags}
"""

DESKTOP_TEMPLATE = """[Desktop Entry]
Type=Application
Name={app_name}
Exec=AppRun
Icon={icon_name}
Categories={category};
Comment={comment}
Terminal=false
"""


def _shell_safe(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")


def _shell_path(path: str) -> str:
    # a leading ~ must stay unquoted for the shell to expand it
    if path == "~" or path.startswith("~/"):
        return "~" + (f"/\"{_shell_safe(path[2:])}\"" if len(path) > 2 else "")
    return f'"{_shell_safe(path)}"'


def render_apprun(options: PackagingOptions, install_root: str) -> str:
    return APPRUN_TEMPLATE.format(
        app_name=_shell_safe(options.app_name),
        app_version=_shell_safe(options.app_version),
        publisher_name=_shell_safe(options.publisher_name or ""),
        publisher_id=_shell_safe(options.publisher_id or ""),
        install_root=_shell_path(install_root),
        executable=_shell_safe(options.executable_name),
        bundle=BUNDLE_DIR,
        flags=SANDBOX_FLAGS,
    )


def render_desktop(options: PackagingOptions, category: str) -> str:
    comment = options.app_name
    if options.publisher_name:
        comment = f"{options.app_name} - {options.publisher_name}"
    return DESKTOP_TEMPLATE.format(
        app_name=options.app_name,
        icon_name=options.icon_name,
        category=category,
        comment=comment,
    )


class AppImagePackager(PlatformPackager):
    platform = "linux"
    supported_formats = ("AppImage",)

    def tool_commands(self) -> list[str]:
        return [self.settings.APPIMAGETOOL_CMD]

    def artifact_name(self, options: PackagingOptions) -> str:
        return f"{options.slug}-{options.app_version}.{self.settings.APPIMAGE_EXTENSION}"

    def package(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path],
    ) -> list[Artifact]:
        target = output_dir / self.artifact_name(options)

        with self.staging() as stage:
            appdir = stage / f"{options.slug}.AppDir"
            appdir.mkdir()

            progress(10, "linux: copying build into AppDir")
            self.copy_tree(tree, appdir / BUNDLE_DIR, token)

            progress(30, "linux: writing AppRun and desktop entry")
            apprun = appdir / "AppRun"
            apprun.write_text(render_apprun(options, self.settings.APPIMAGE_INSTALL_ROOT), encoding="utf-8")
            os.chmod(apprun, 0o755)
            (appdir / f"{options.slug}.desktop").write_text(
                render_desktop(options, self.settings.APPIMAGE_CATEGORY), encoding="utf-8"
            )

            icon = self.resolve_icon(tree, options)
            if icon:
                shutil.copyfile(icon, appdir / f"{options.icon_name}.png")
                shutil.copyfile(icon, appdir / ".DirIcon")

            progress(50, "linux: running appimagetool")
            cmd = self.command(self.settings.APPIMAGETOOL_CMD) + [str(appdir), str(target)]
            self.run(cmd, token, cwd=output_dir, env={"ARCH": "x86_64"}, log_path=log_path)

        progress(90, "linux: checking output")
        if not target.is_file():
            raise BuildToolError("appimagetool", 0, f"{target.name} was not produced")
        return [Artifact.from_path("AppImage", target)]
