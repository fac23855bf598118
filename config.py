"""Environment-driven settings for the pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from batch import RetryPolicy

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Settings field -> environment variable.
ENV_NAMES = {
    "metadata_dir": "DIR",
    "s3_url": "S3_URL",
    "access_key_id": "ACCESS_KEY_ID",
    "secret_access_key": "SECRET_ACCESS_KEY",
    "bucket": "BUCKET",
    "backend_url": "BACKEND_URL",
    "backend_token": "BACKEND_TOKEN",
    "r2_url": "R2_URL",
    "r2_access_key_id": "R2_ACCESS_KEY_ID",
    "r2_secret_access_key": "R2_SECRET_ACCESS_KEY",
    "r2_bucket": "R2_BUCKET",
    "filelist_url": "FILELIST_URL",
}

PRIMARY_STORE = ("s3_url", "access_key_id", "secret_access_key", "bucket")
BACKEND = ("backend_url", "backend_token")
ARCHIVE_STORE = ("r2_url", "r2_access_key_id", "r2_secret_access_key", "r2_bucket")


@dataclass(frozen=True, slots=True)
class Settings:
    metadata_dir: str | None = None
    s3_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    bucket: str | None = None
    backend_url: str | None = None
    backend_token: str | None = None
    r2_url: str | None = None
    r2_access_key_id: str | None = None
    r2_secret_access_key: str | None = None
    r2_bucket: str | None = None
    filelist_url: str | None = None
    s3_region: str = "auto"
    files_domain: str = "byrdocs.org"
    scratch_dir: str = "./tmp"
    catalog_key: str = "metadata2.json"
    upload_attempts: int = 3
    upload_backoff_seconds: float = 0.0
    inventory_strict: bool = False
    zip_preview_strict: bool = False
    request_timeout_seconds: float = 30.0

    @property
    def upload_retry(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.upload_attempts, backoff_seconds=self.upload_backoff_seconds)

    def require(self, *names: str) -> None:
        """Raise RuntimeError naming every listed setting that is unset."""
        missing = [ENV_NAMES.get(name, name.upper()) for name in names if not getattr(self, name)]
        if len(missing) == 1:
            raise RuntimeError(f"{missing[0]} environment variable is required")
        if missing:
            raise RuntimeError(f"environment variables are required: {', '.join(missing)}")


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from ``environ`` (``os.environ`` by default)."""
    env = os.environ if environ is None else environ
    values: dict[str, object] = {
        name: env.get(variable) or None for name, variable in ENV_NAMES.items()
    }
    defaults = {field.name: field.default for field in fields(Settings)}
    values.update(
        s3_region=env.get("S3_REGION") or defaults["s3_region"],
        files_domain=env.get("FILES_DOMAIN") or defaults["files_domain"],
        scratch_dir=env.get("SCRATCH_DIR") or defaults["scratch_dir"],
        catalog_key=env.get("CATALOG_KEY") or defaults["catalog_key"],
        upload_attempts=int(env.get("UPLOAD_ATTEMPTS") or defaults["upload_attempts"]),
        upload_backoff_seconds=float(
            env.get("UPLOAD_BACKOFF_SECONDS") or defaults["upload_backoff_seconds"]
        ),
        inventory_strict=_flag(env.get("INVENTORY_STRICT")),
        zip_preview_strict=_flag(env.get("ZIP_PREVIEW_STRICT")),
        request_timeout_seconds=float(
            env.get("REQUEST_TIMEOUT_SECONDS") or defaults["request_timeout_seconds"]
        ),
    )
    return Settings(**values)


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUE_VALUES
