"""Application configuration using Pydantic settings.

All values can be overridden with ``TAGX_``-prefixed environment variables,
e.g. ``TAGX_POLYGON_API_KEY`` or ``TAGX_STANDARD_BATCH_SIZE``.
"""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Paths
    project_root: Path = Path(__file__).resolve().parent.parent.parent
    data_dir: Path = project_root / "data"
    db_path: Path = data_dir / "tag_explorer.db"

    # Database
    db_url: str = ""
    db_echo: bool = False
    # Seconds a SQLite connection waits on another writer before giving up
    db_busy_timeout: float = 5.0

    # Shared secret for write endpoints (Authorization: Bearer <secret>)
    cron_secret: str = ""

    # Market snapshot provider (Polygon grouped daily bars)
    polygon_api_key: str = ""
    polygon_base_url: str = "https://api.polygon.io"
    snapshot_search_days: int = 7
    snapshot_start_offset_days: int = 1
    snapshot_timeout_seconds: float = 15.0

    # Fundamentals provider (Finnhub stock/metric)
    finnhub_api_key: str = ""
    finnhub_base_url: str = "https://finnhub.io/api/v1"
    fundamentals_timeout_seconds: float = 10.0
    fundamentals_delay_seconds: float = 0.15

    # Run modes
    standard_batch_size: int = 10
    standard_batch_delay_seconds: float = 1.0
    standard_max_attempts: int = 3
    batch_batch_size: int = 20
    batch_batch_delay_seconds: float = 2.0
    batch_max_attempts: int = 5
    retry_backoff_seconds: float = 1.0
    max_reported_errors: int = 10

    # Tagging
    static_tag_families: list[str] = ["sector", "index"]
    sector_min_members: int = 10

    # Health scoring
    stale_after_hours: int = 24
    anomalous_change_pct: float = 50.0
    batch_trigger_threshold: int = 60

    # Run lock
    run_lock_timeout_seconds: int = 1800

    # Audit retention
    stats_retention_days: int = 90

    # Scheduler
    refresh_time: str = "06:30"
    health_check_interval_hours: int = 6

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = {"env_prefix": "TAGX_"}

    def model_post_init(self, __context):
        import tempfile
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            test_file = self.data_dir / ".write_test"
            test_file.touch()
            test_file.unlink()
        except (PermissionError, OSError):
            self.data_dir = Path(tempfile.gettempdir())
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.db_path = self.data_dir / "tag_explorer.db"
        if not self.db_url:
            self.db_url = f"sqlite:///{self.db_path}"


settings = Settings()
