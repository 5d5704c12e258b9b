from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TASKSYNC_",
    )

    # Database
    db_path: str = "/data/tasksync.db"

    # Remote service credentials
    remote_base_url: str = "https://api.notion.com/v1"
    remote_api_key: str = ""
    remote_api_version: str = "2022-06-28"

    # Remote databases, one per entity kind (empty = kind stays local-only)
    task_database_id: str = ""
    project_database_id: str = ""
    time_entry_database_id: str = ""
    note_database_id: str = ""

    # Per-kind overrides of field -> property name, e.g. {"task": {"title": "Name"}}
    field_maps: dict[str, dict[str, str]] = {}

    # Remote client
    min_request_interval: float = 0.35  # ~3 requests/second
    max_retries: int = 3
    backoff_base: float = 1.0
    max_backoff: float = 30.0
    request_timeout: float = 120.0

    # Outbox
    outbox_batch_size: int = 25
    stuck_retry_threshold: int = 5

    # Orchestrator
    sync_interval_seconds: int = 300
    pull_page_size: int = 25

    # Bulk import; kinds without a configured database are ignored
    bulk_import_kinds: list[str] = ["task", "project", "time_entry", "note"]
    import_target_count: int = 500
    import_batch_size: int = 5
    import_max_failures: int = 10
    import_concurrency: int = 3
    import_batches_per_tick: int = 50

    trash_retention_days: int = 30
    debug: bool = False

    def database_ids(self) -> dict[str, str]:
        return {
            "task": self.task_database_id,
            "project": self.project_database_id,
            "time_entry": self.time_entry_database_id,
            "note": self.note_database_id,
        }

    def public_view(self) -> dict[str, Any]:
        """Settings without secrets."""
        return self.model_dump(exclude={"remote_api_key"})


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
