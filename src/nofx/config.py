"""Application configuration loaded from environment variables."""

from pydantic import computed_field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """NOFX control-plane configuration."""

    # Database (empty = local SQLite mode)
    database_url: str = ""

    # Redis (empty = in-process queue)
    redis_url: str = ""

    # Persistence driver: "db" (SQLAlchemy, transactional) | "fs" (JSON files)
    data_driver: str = "db"

    # Local mode data directory (SQLite file, filesystem store)
    data_dir: str = "./data"

    # Worker
    worker_concurrency: int = 4
    queue_backoff_ms: list[int] = [0, 2000, 5000, 10000]

    # Polling delays used instead of blocking waits
    dependency_poll_ms: int = 2000
    gate_poll_ms: int = 5000

    # Timeout monitor
    step_timeout_ms: int = 15 * 60 * 1000
    timeout_check_interval_seconds: float = 30.0

    # Outbox relay
    outbox_relay_interval_seconds: float = 1.0
    outbox_relay_batch: int = 25

    # Approvals: "none" | "dangerous" | "all"
    approvals_db_writes: str = "dangerous"
    approvals_allow_waive: bool = True

    # db_write target database (empty = the control-plane database)
    db_write_url: str = ""

    # db_write policy (YAML file with allow/deny rules, optional)
    db_write_policy_file: str = ""

    # Quality gates (gate:<name> tools)
    workspace_dir: str = "."
    gate_commands: dict[str, str] = {
        "typecheck": "mypy .",
        "lint": "ruff check .",
        "unit": "pytest -q",
    }
    gates_disabled: list[str] = []
    gate_timeout_seconds: float = 600.0

    # Outgoing event webhook (empty = events are not forwarded)
    event_webhook_url: str = ""
    webhook_secret: str = "your-webhook-signing-secret"

    # Scheduler (disable in multi-worker deployments; run a dedicated scheduler service)
    scheduler_enabled: bool = True

    # Logging
    log_level: str = "info"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @computed_field
    @property
    def is_local_mode(self) -> bool:
        """True when running in local mode (SQLite + in-process queue)."""
        return not self.database_url or self.database_url.startswith("sqlite")


settings = Settings()
