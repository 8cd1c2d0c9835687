from __future__ import annotations
import json
import shutil
from pathlib import Path
from typing import Optional

from ..cancellation import CancellationToken
from ..errors import PackagingError
from ..models import Artifact, BuildTree, PackagingOptions
from ..storage import iter_files, zip_directory
from .base import PlatformPackager, ProgressSink

MANIFEST_LINK = '<link rel="manifest" href="manifest.json">'
SW_REGISTER = """<script>
if ('serviceWorker' in navigator) {
  window.addEventListener('load', () => navigator.serviceWorker.register('sw.js'));
}
</script>"""

SERVICE_WORKER = """// Generated service worker
const CACHE_NAME = %(cache)s;
const STATIC_ASSETS = %(assets)s;

self.addEventListener('install', (event) => {
  event.waitUntil(
    caches.open(CACHE_NAME).then((cache) => cache.addAll(STATIC_ASSETS))
  );
  self.skipWaiting();
});

self.addEventListener('activate', (event) => {
  event.waitUntil(
    caches.keys().then((keys) =>
      Promise.all(keys.filter((k) => k !== CACHE_NAME).map((k) => caches.delete(k)))
    )
  );
  self.clients.claim();
});

self.addEventListener('fetch', (event) => {
  if (event.request.method !== 'GET') return;
  event.respondWith(
    caches.match(event.request).then((cached) => cached || fetch(event.request))
  );
});
"""


def generate_manifest(options: PackagingOptions, icon: Optional[str]) -> dict:
    """Generate a PWA manifest.json"""
    extra = options.extras.get("pwa", {})
    icons = []
    if icon:
        icons = [
            {"src": icon, "sizes": "192x192", "type": "image/png", "purpose": "any maskable"},
            {"src": icon, "sizes": "512x512", "type": "image/png", "purpose": "any maskable"},
        ]
    return {
        "name": options.app_name,
        "short_name": extra.get("short_name", options.app_name[:12]),
        "description": options.description,
        "version": options.app_version,
        "start_url": extra.get("start_url", "./index.html"),
        "scope": extra.get("scope", "./"),
        "display": extra.get("display", "standalone"),
        "orientation": extra.get("orientation", "any"),
        "theme_color": extra.get("theme_color", "#1a1a2e"),
        "background_color": extra.get("background_color", "#ffffff"),
        "icons": icons,
        "prefer_related_applications": False,
    }


def generate_service_worker(options: PackagingOptions, assets: list[str]) -> str:
    return SERVICE_WORKER % {
        "cache": json.dumps(f"{options.icon_name}-v{options.app_version}"),
        "assets": json.dumps(["./"] + assets, indent=2),
    }


class PWAPackager(PlatformPackager):
    """Installable web app: manifest + service worker around the web build, shipped as a zip."""

    platform = "pwa"
    supported_formats = ("zip",)

    def package(
        self,
        tree: BuildTree,
        options: PackagingOptions,
        progress: ProgressSink,
        token: CancellationToken,
        output_dir: Path,
        log_path: Optional[Path],
    ) -> list[Artifact]:
        target = output_dir / f"{options.slug}-{options.app_version}-pwa.zip"

        with self.staging() as stage:
            web = stage / "web"
            progress(10, "pwa: copying web build")
            self.copy_tree(tree, web, token)

            index = web / "index.html"
            if not index.is_file():
                raise PackagingError("index.html not found in build, required for a PWA")

            progress(40, "pwa: writing manifest and service worker")
            icon = self.resolve_icon(tree, options)
            icon_name = None
            if icon:
                icon_name = f"icon-{options.icon_name}{icon.suffix}"
                shutil.copyfile(icon, web / icon_name)
            (web / "manifest.json").write_text(json.dumps(generate_manifest(options, icon_name), indent=2), encoding="utf-8")
            assets = sorted(str(p.relative_to(web)).replace("\\", "/") for p in iter_files(web))
            (web / "sw.js").write_text(generate_service_worker(options, assets), encoding="utf-8")

            html = index.read_text(encoding="utf-8", errors="replace")
            if 'rel="manifest"' not in html and "</head>" in html:
                html = html.replace("</head>", f"  {MANIFEST_LINK}\n{SW_REGISTER}\n</head>", 1)
                index.write_text(html, encoding="utf-8")
            token.check()

            progress(70, "pwa: creating archive")
            zip_directory(web, target)
            token.check()

        return [Artifact.from_path("zip", target)]
