from __future__ import annotations

from ..config import Settings
from .android import AndroidPackager
from .appimage import AppImagePackager
from .base import PlatformPackager
from .electron import MacOSPackager, WindowsPackager
from .pwa import PWAPackager

PACKAGER_CLASSES: dict[str, type[PlatformPackager]] = {
    "windows": WindowsPackager,
    "macos": MacOSPackager,
    "linux": AppImagePackager,
    "android": AndroidPackager,
    "pwa": PWAPackager,
}


def build_registry(settings: Settings) -> dict[str, PlatformPackager]:
    """One packager instance per platform tag."""
    return {tag: cls(settings) for tag, cls in PACKAGER_CLASSES.items()}
