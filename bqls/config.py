"""Application configuration"""
from pydantic_settings import BaseSettings
from typing import List, Literal


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Cache store
    cache_dir: str = "~/.cache/bqls"

    # Remote directory
    remote_backend: Literal["api", "cli"] = "api"
    default_project: str = ""
    target_projects: str = ""  # comma separated, refreshed along with the default project
    enumerate_projects: bool = False  # also refresh every project the credentials can list
    remote_timeout_seconds: float = 60.0
    column_query_row_limit: int = 10000
    column_fetch_concurrency: int = 4
    bq_cli_path: str = "bq"
    gcloud_cli_path: str = "gcloud"

    # Diagnostics
    dry_run_on_save: bool = True
    refresh_on_open: bool = False

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "BQLS_"
        case_sensitive = False

    def target_project_list(self) -> List[str]:
        return [p.strip() for p in (self.target_projects or "").split(",") if p.strip()]


settings = Settings()
