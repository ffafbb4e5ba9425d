"""
Runtime configuration read from ``MODEL_LIBRARY_*`` environment variables.
"""

import os

from pydantic import BaseModel

from .limits import MAX_FILES_PER_UPLOAD

ENV_PREFIX = "MODEL_LIBRARY_"


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = "sqlite:///model-library.db"

    # S3-compatible object store (AWS S3, Cloudflare R2, MinIO).
    storage_endpoint: str | None = None  # "localhost:9000"
    storage_region: str = "auto"
    storage_access_key: str | None = None
    storage_secret_key: str | None = None
    storage_bucket: str = "models"
    storage_use_ssl: bool = True

    max_files_per_upload: int = MAX_FILES_PER_UPLOAD
    presign_ttl_minutes: int = 60

    @property
    def storage_endpoint_url(self) -> str | None:
        """Full endpoint URL, or None to let boto3 resolve AWS endpoints."""
        if not self.storage_endpoint:
            return None
        if "://" in self.storage_endpoint:
            return self.storage_endpoint
        scheme = "https" if self.storage_use_ssl else "http"
        return f"{scheme}://{self.storage_endpoint}"

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from the environment; keyword overrides win (CLI flags)."""
        values: dict = {
            "database_url": _env("DATABASE_URL", cls.model_fields["database_url"].default),
            "storage_endpoint": _env("STORAGE_ENDPOINT"),
            "storage_region": _env("STORAGE_REGION", "auto"),
            "storage_access_key": _env("STORAGE_ACCESS_KEY"),
            "storage_secret_key": _env("STORAGE_SECRET_KEY"),
            "storage_bucket": _env("STORAGE_BUCKET", "models"),
            "storage_use_ssl": _env_bool("STORAGE_USE_SSL", True),
            "max_files_per_upload": int(_env("MAX_FILES_PER_UPLOAD", str(MAX_FILES_PER_UPLOAD))),
            "presign_ttl_minutes": int(_env("PRESIGN_TTL_MINUTES", "60")),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
