"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Microsoft Graph
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_TIMEOUT: float = 30.0
    GRAPH_MAX_RETRIES: int = 3

    # SharePoint CRM lists
    SHAREPOINT_SITE_ID: str = ""
    LEADS_LIST_ID: str = ""
    ANCHORS_LIST_ID: str = ""
    EVENTS_LIST_ID: str = ""

    # Persistent cache
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_KEY_PREFIX: str = "leadsync"
    LEADS_STORAGE_KEY: str = "CRMLeadsData"
    ANCHORS_STORAGE_KEY: str = "CRMAnchorsData"

    # Change notifications (Redis stream consumed by the dashboard)
    NOTIFY_STREAM: str = "leadsync:changes"

    # Smart status evaluation
    OWN_EMAIL: str = ""  # Mailbox of the authenticated user
    STATUS_CANDIDATE_MODE: str = "all"  # "all" or "non_terminal"
    STATUS_TERMINAL_STATUSES: list[str] = ["Closed"]
    STATUS_BATCH_SIZE: int = 20  # Graph $batch hard limit
    STATUS_MESSAGES_PER_LEAD: int = 10
    AWAITING_OUR_REPLY_DAYS: float = 2.0
    AWAITING_THEIR_REPLY_DAYS: float = 7.0

    def sharepoint_list_url(self, list_id: str) -> str:
        """Return the Graph URL for a SharePoint list on the configured site."""
        return f"{self.GRAPH_BASE_URL}/sites/{self.SHAREPOINT_SITE_ID}/lists/{list_id}"


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
