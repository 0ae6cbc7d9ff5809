"""
Alert/incident sync configuration.

Nothing is required at startup: every setting has a default suitable for a
local checkout. The three CSV directories can be overridden with
CSV_DROP_PATH, CSV_PROCESSED_PATH and CSV_ERROR_PATH (or a .env file).
Call validate_paths() before processing files; it refuses layouts where a
processed file would land back in the drop folder.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Maps each row kind to the sub-directory it uses under drop/ and processed/.
# Failed files of either kind share the flat error directory.
_KIND_SUBDIRS: dict[str, str] = {
    "incident": "incidents",
    "alert": "alerts",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # CSV directory contract
    # ------------------------------------------------------------------
    csv_drop_path: Path = Path("data/drop")
    csv_processed_path: Path = Path("data/processed")
    csv_error_path: Path = Path("data/error")

    # ------------------------------------------------------------------
    # Drop-folder monitor
    # ------------------------------------------------------------------
    monitoring_enabled: bool = False
    monitoring_interval_seconds: float = 60.0

    # App
    log_level: str = "INFO"

    def drop_dir(self, kind: str) -> Path:
        return self.csv_drop_path / _subdir_for(kind)

    def processed_dir(self, kind: str) -> Path:
        return self.csv_processed_path / _subdir_for(kind)

    def storage_directories(self) -> list[Path]:
        """Every directory the monitor expects to exist, drop folders first."""
        return [
            *(self.csv_drop_path / sub for sub in _KIND_SUBDIRS.values()),
            *(self.csv_processed_path / sub for sub in _KIND_SUBDIRS.values()),
            self.csv_error_path,
        ]

    def validate_paths(self) -> None:
        """Assert that the processed and error directories differ from the drop directory.

        Raises:
            RuntimeError: If either destination resolves to the drop directory.
        """
        drop = self.csv_drop_path.resolve()
        clashing = [
            name
            for name, path in (
                ("csv_processed_path", self.csv_processed_path),
                ("csv_error_path", self.csv_error_path),
            )
            if path.resolve() == drop
        ]
        if clashing:
            clashing_vars = ", ".join(c.upper() for c in clashing)
            raise RuntimeError(
                f"Invalid CSV directory layout: {clashing_vars} must differ from "
                f"CSV_DROP_PATH ({self.csv_drop_path}). "
                f"Set these in your .env file."
            )


def _subdir_for(kind: str) -> str:
    try:
        return _KIND_SUBDIRS[kind]
    except KeyError:
        raise ValueError(
            f"Unknown row kind '{kind}'. "
            f"Known kinds: {', '.join(sorted(_KIND_SUBDIRS))}"
        ) from None


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    In tests, clear the cache with get_settings.cache_clear() after
    patching environment variables, or instantiate Settings() directly
    with _env_file=None to avoid reading the .env file.
    """
    return Settings()
