from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path

PLATFORMS = ("windows", "macos", "linux", "android", "pwa")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="PACKAGER_", env_file_encoding="utf-8", extra="ignore")

    OUTPUT_DIR_BASE: Path | str = Path("./data")
    LOG_DIR: Path | str | None = None

    # uploads
    MAX_UPLOAD_MB: int = 2048
    MAX_STORAGE_MB: int = 0  # 0 = unlimited
    ALLOWED_ARCHIVES: list[str] | str = [".zip", ".tar", ".tar.gz", ".tgz"]

    # scheduling
    MAX_CONCURRENT_JOBS: int = 3
    UNIT_TIMEOUT_SECONDS: float = Field(default=30 * 60, description="Hard bound for one platform unit")
    CANCEL_GRACE_SECONDS: float = 10.0
    POLL_INTERVAL_SECONDS: float = 0.2
    JOB_TTL_MINUTES: int = 120
    HISTORY_LIMIT: int = 50
    GC_INTERVAL_SECONDS: float = 60.0
    BREAKER_THRESHOLD: int = 3
    BREAKER_WINDOW_SECONDS: float = 5 * 60
    SUBSCRIBER_QUEUE_SIZE: int = 1000

    PLATFORM_VERSIONS: dict[str, str] = {p: "1.0.0" for p in PLATFORMS}

    # external tools
    APPIMAGETOOL_CMD: str = "appimagetool"
    APPIMAGE_EXTENSION: str = "AppImage"
    APPIMAGE_INSTALL_ROOT: str = "~/.local/share/packaged-apps"
    APPIMAGE_CATEGORY: str = "Utility"
    ELECTRON_BUILDER_CMD: str = "npx electron-builder"
    CAPACITOR_CMD: str = "npx cap"
    GRADLE_CMD: str = "gradle"

    # server
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    CORS_ORIGINS: list[str] | str = ["*"]

    @property
    def sessions_dir(self) -> Path:
        return self.OUTPUT_DIR_BASE / "sessions"

    @property
    def jobs_dir(self) -> Path:
        return self.OUTPUT_DIR_BASE / "jobs"

    @property
    def temp_dir(self) -> Path:
        return self.OUTPUT_DIR_BASE / "tmp"

    def ensure_dirs(self) -> None:
        for p in (self.OUTPUT_DIR_BASE, self.sessions_dir, self.jobs_dir, self.temp_dir):
            p.mkdir(parents=True, exist_ok=True)


def _split(raw: str) -> list[str]:
    return [p.strip() for p in raw.replace(";", ",").replace(" ", ",").split(",") if p.strip()]


def load_settings(**overrides) -> Settings:
    s = Settings(**overrides)

    # Normalize values coming from env
    if isinstance(s.ALLOWED_ARCHIVES, str):
        s.ALLOWED_ARCHIVES = _split(s.ALLOWED_ARCHIVES)
    s.ALLOWED_ARCHIVES = [p.lower() if p.startswith(".") else f".{p.lower()}" for p in s.ALLOWED_ARCHIVES]

    if isinstance(s.CORS_ORIGINS, str):
        s.CORS_ORIGINS = _split(s.CORS_ORIGINS)

    if isinstance(s.OUTPUT_DIR_BASE, str):
        s.OUTPUT_DIR_BASE = Path(s.OUTPUT_DIR_BASE)
    if isinstance(s.LOG_DIR, str):
        s.LOG_DIR = Path(s.LOG_DIR)

    # platforms missing from an env override fall back to 1.0.0
    s.PLATFORM_VERSIONS = {p: "1.0.0" for p in PLATFORMS} | dict(s.PLATFORM_VERSIONS)
    return s


settings = load_settings()
