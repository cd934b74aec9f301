"""
Deployer Configuration

Settings and configuration management.
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeployerSettings(BaseSettings):
    """Deployer configuration settings, built once at startup."""

    # Marketplace CLI
    akash_binary: str = "akash"
    akash_node: str = "https://rpc.akashnet.net:443"
    akash_chain: str = "akashnet-2"
    akash_from: str = "tenant"
    akash_mnemonic: Optional[str] = None
    keyring_backend: str = "test"
    provider_addr: Optional[str] = None
    min_deposit: str = "5000000uakt"

    # Admission gate
    busy_check_url: str = ""
    disable_busy_check: bool = False
    busy_probe_fail_open: bool = False
    busy_probe_timeout_seconds: float = 5.0

    # Dry run
    dry_run: bool = False
    dry_run_uri_base: str = "https://demo.indianode.com/job"

    # Queue
    queue_enabled: bool = False
    queue_memory_fallback: bool = True
    queue_key: str = "gpu_jobs"
    queue_tick_seconds: float = 5.0
    # None waits for an in-flight queued job at shutdown; a number bounds the wait
    worker_shutdown_grace_seconds: Optional[float] = None
    redis_url: Optional[str] = None
    idempotency_ttl_seconds: int = 86400

    # Admin
    admin_token: Optional[str] = None

    # Notifications
    notify_url: Optional[str] = None
    notify_token: Optional[str] = None
    notify_timeout_seconds: float = 10.0

    # Polling budgets
    poll_interval_seconds: float = 4.0
    lease_poll_attempts: int = 30
    uri_poll_attempts: int = 45

    # Files
    sdl_dir: Optional[str] = None
    work_dir: Optional[str] = None

    # Database
    database_url: str = "sqlite+aiosqlite:///./gpu_deployer.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=8080, validation_alias="PORT")
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_dsn(self) -> str:
        """Get the async DSN for SQLAlchemy."""
        # Convert postgresql:// to postgresql+asyncpg:// if needed
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url
