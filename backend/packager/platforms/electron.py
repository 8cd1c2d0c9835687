"""
Windows and macOS packagers, both driven by electron-builder.
"""
from __future__ import annotations
import json
import shutil
from pathlib import Path
from typing import Optional

from ..cancellation import CancellationToken
from ..errors import BuildToolError
from ..models import Artifact, BuildTree, PackagingOptions
from .base import PlatformPackager, ProgressSink

MAIN_JS = """const { app, BrowserWindow } = require('electron');
const path = require('path');

function createWindow() {
  const win = new BrowserWindow({
    title: %(title)s,
    icon: path.join(__dirname, 'app-icon.png'),
    show: false,
    webPreferences: { nodeIntegration: false, contextIsolation: true }
  });
  win.removeMenu();
  win.maximize();
  win.loadFile('index.html');
  win.once('ready-to-show', () => win.show());
}

app.whenReady().then(createWindow);
app.on('window-all-closed', () => { if (process.platform !== 'darwin') app.quit(); });
app.on('activate', () => { if (BrowserWindow.getAllWindows().length === 0) createWindow(); });
"""


def package_json(options: PackagingOptions) -> dict:
    return {
        "name": options.icon_name,
        "productName": options.app_name,
        "version": options.app_version,
        "description": options.description or f"{options.app_name} - Electron application",
        "author": options.publisher_name or "",
        "main": "main.js",
    }


class ElectronBuilderPackager(PlatformPackager):
    """Shared electron-builder flow; subclasses pick the target flag and outputs."""

    target_flag = ""
    targets: list[str] = []
    outputs: dict[str, str] = {}

    def tool_commands(self) -> list[str]:
        return [self.settings.ELECTRON_BUILDER_CMD]

    def builder_config(self, options: PackagingOptions, output_dir: Path, icon: Optional[str]) -> dict:
        extra = options.extras.get(self.platform, {})
        section = {"target": extra.get("targets", self.targets)}
        if icon:
            section["icon"] = icon
        app_id = extra.get("app_id") or f"com.{(options.publisher_id or 'app').lower()}.{options.icon_name}".replace("-", "")
        return {
            "appId": app_id,
            "productName": options.app_name,
            "artifactName": f"{options.slug}-{options.app_version}" + ".${ext}",
            "directories": {"output": str(output_dir)},
            "files": ["**/*"],
            self.config_key: section,
        }

    @property
    def config_key(self) -> str:
        return {"windows": "win", "macos": "mac"}[self.platform]

    def package(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path],
    ) -> list[Artifact]:
        with self.staging() as stage:
            project = stage / "project"
            progress(10, f"{self.platform}: copying build")
            self.copy_tree(tree, project, token)

            progress(25, f"{self.platform}: preparing Electron project")
            if not (project / "package.json").exists():
                (project / "package.json").write_text(json.dumps(package_json(options), indent=2), encoding="utf-8")
            if not (project / "main.js").exists():
                (project / "main.js").write_text(MAIN_JS % {"title": json.dumps(options.app_name)}, encoding="utf-8")
            icon = self.resolve_icon(tree, options)
            icon_name = None
            if icon:
                icon_name = "app-icon" + icon.suffix
                shutil.copyfile(icon, project / icon_name)

            config_path = stage / f"electron-builder-{self.config_key}.json"
            config_path.write_text(json.dumps(self.builder_config(options, output_dir, icon_name), indent=2), encoding="utf-8")

            progress(40, f"{self.platform}: running electron-builder")
            cmd = self.command(self.settings.ELECTRON_BUILDER_CMD) + [
                "--config", str(config_path),
                "--projectDir", str(project),
                "--publish", "never",
                self.target_flag,
            ]
            self.run(cmd, token, cwd=project, log_path=log_path)

        progress(90, f"{self.platform}: collecting artifacts")
        artifacts = self.collect(output_dir, self.outputs)
        if not artifacts:
            raise BuildToolError("electron-builder", 0, f"no {'/'.join(self.outputs)} produced")
        return artifacts


class WindowsPackager(ElectronBuilderPackager):
    platform = "windows"
    supported_formats = ("nsis", "portable")
    target_flag = "--win"
    targets = ["nsis", "portable"]
    outputs = {".exe": "exe", ".msi": "msi"}


class MacOSPackager(ElectronBuilderPackager):
    platform = "macos"
    supported_formats = ("dmg", "zip")
    target_flag = "--mac"
    targets = ["dmg", "zip"]
    outputs = {".dmg": "dmg", ".zip": "zip"}
