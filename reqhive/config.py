import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

APP_NAME = "reqhive"
COLLECTIONS_DIR = "collections"


def default_data_dir() -> Path:
    xdg_data = os.getenv("XDG_DATA_HOME")
    base = Path(xdg_data).expanduser() if xdg_data else Path.home() / ".local" / "share"
    return base / APP_NAME


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=default_data_dir)
    dry_run: bool = False
    autosave_seconds: float = Field(default=5.0, ge=0)
    lock_timeout: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    ssl_verify: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    sorting: Literal["recent", "name", "size"] = "recent"

    @property
    def collections_dir(self) -> Path:
        return self.data_dir / COLLECTIONS_DIR

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from os.environ (call load_dotenv() first to pick up .env)."""
        values: dict = {
            "dry_run": os.getenv("REQHIVE_DRY_RUN", "false").lower() == "true",
            "ssl_verify": os.getenv("SSL_VERIFY", "true").lower() != "false",
        }
        data_dir = os.getenv("REQHIVE_DATA_DIR")
        if data_dir:
            values["data_dir"] = Path(data_dir).expanduser()
        for key, env_name in (
            ("autosave_seconds", "REQHIVE_AUTOSAVE_SECONDS"),
            ("lock_timeout", "REQHIVE_LOCK_TIMEOUT"),
            ("request_timeout", "REQHIVE_REQUEST_TIMEOUT"),
        ):
            raw = os.getenv(env_name)
            if raw:
                values[key] = raw
        log_level = os.getenv("REQHIVE_LOG_LEVEL")
        if log_level:
            values["log_level"] = log_level.upper()
        sorting = os.getenv("REQHIVE_SORTING")
        if sorting:
            values["sorting"] = sorting.lower()
        return cls(**values)
