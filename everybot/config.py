"""Configuration settings for the ingestion pipeline."""

from pydantic_settings import BaseSettings

from everybot.errors import ConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///everybot.db"

    # HTTP
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/121.0.0.0 Safari/537.36"
    )
    accept_language: str = "pl-PL,pl;q=0.9,en;q=0.7"
    proxy_url: str | None = None
    request_timeout: float = 20.0
    max_retries: int = 3
    retry_backoff: float = 1.5

    # Page pacing during harvest
    default_delay_min: float = 1.0
    default_delay_max: float = 2.5

    # Harvest budgets
    harvest_pages: int = 2
    harvest_limit: int = 30
    harvest_sources: list[str] = ["otodom", "olx"]

    # Tenant used by the CLI when --office is not given
    office_id: str = "default"

    # Enrichment / verification sweeps
    enrich_limit: int = 25
    enrich_rounds: int = 4
    enrich_delay: float = 0.25
    enrich_retry_hours: float = 24.0
    verify_limit: int = 50
    verify_rounds: int = 4
    verify_delay: float = 0.25
    verify_interval_hours: float = 12.0

    # Geocoder (Photon)
    geocoder_url: str = "https://photon.komoot.io/api/"
    geocoder_user_agent: str = "everybot geocoder"
    geocode_delay: float = 0.25
    geocode_limit: int = 50
    geocode_min_confidence: float = 0.20
    geocode_retry_days: int = 7

    # Price registry (RCN)
    rcn_wfs_url: str = "https://mapy.geoportal.gov.pl/wss/service/rcn"
    rcn_wms_url: str = "https://mapy.geoportal.gov.pl/wss/service/rcn"
    rcn_layers: list[str] = ["lokale", "budynki", "dzialki"]
    rcn_radius_m: float = 250.0
    rcn_cooldown_hours: float = 6.0
    rcn_delay: float = 0.25
    rcn_limit: int = 50
    rcn_axis_order: str = "yx"
    rcn_map_url: str = "https://mapy.geoportal.gov.pl/imapnext/imap/"

    # Tenant locks
    lock_ttl_minutes: int = 30

    model_config = {"env_file": ".env", "env_prefix": "EVERYBOT_", "extra": "ignore"}

    def require(self, *names: str) -> None:
        """Raise ConfigError unless every named setting is non-empty."""
        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")


settings = Settings()
