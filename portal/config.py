"""Portal configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class PortalSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///portal.db"
    echo_sql: bool = False
    app_title: str = "Client Portal"

    # Object storage (files on disk, served back under storage_base_url)
    storage_dir: str = "data/storage"
    storage_base_url: str = "http://localhost:8030/storage"
    upload_max_bytes: int = 10 * 1024 * 1024
    upload_allowed_types: str = (
        "image/jpeg,image/png,image/gif,image/webp,image/svg+xml,"
        "application/pdf,application/msword,"
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    )
    upload_chunk_bytes: int = 256 * 1024

    # Callable functions
    functions_url: str = "http://localhost:8030/functions"
    functions_admin_uid: str = ""
    functions_timeout_seconds: float = 15.0

    # Identity provider
    identity_token_ttl_seconds: int = 3600
    identity_min_password_length: int = 6
    profile_retry_delay_seconds: float = 1.0

    # Local cache (durable key-value file)
    cache_file: str = "data/cache.json"
    cache_prefix: str = "portal_cache_"
    cache_ttl_seconds: float = 300.0
    cache_quota_bytes: int = 5 * 1024 * 1024

    # Live queries: filter + order_by on different fields needs a declared
    # composite index, e.g. "messages:projectId:timestamp,tickets:status:createdAt".
    enforce_composite_indexes: bool = True
    composite_indexes: str = ""

    toast_duration_seconds: float = 3.0
    default_page_size: int = 20
    activity_log_enabled: bool = True
    activity_feed_limit: int = 20

    model_config = {"env_prefix": "PORTAL_", "env_file": ".env", "extra": "ignore"}

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent

    @property
    def project_dir(self) -> Path:
        return self.base_dir.parent

    @property
    def storage_path(self) -> Path:
        path = Path(self.storage_dir)
        if not path.is_absolute():
            path = self.project_dir / path
        return path

    @property
    def cache_path(self) -> Path:
        path = Path(self.cache_file)
        if not path.is_absolute():
            path = self.project_dir / path
        return path

    @property
    def allowed_upload_types(self) -> list[str]:
        return [t.strip() for t in self.upload_allowed_types.split(",") if t.strip()]

    @property
    def composite_index_list(self) -> list[tuple[str, tuple[str, ...], tuple[str, ...]]]:
        """Parse comma-separated collection:filter_fields:order_fields triples.

        Multiple fields inside one part are joined with ``+``.
        """
        indexes: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = []
        if not self.composite_indexes.strip():
            return indexes

        for item in self.composite_indexes.split(","):
            parts = [p.strip() for p in item.strip().split(":")]
            if len(parts) != 3 or not all(parts):
                continue
            collection, filter_part, order_part = parts
            filter_fields = tuple(sorted(f for f in filter_part.split("+") if f))
            order_fields = tuple(f for f in order_part.split("+") if f)
            indexes.append((collection, filter_fields, order_fields))
        return indexes

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


settings = PortalSettings()
