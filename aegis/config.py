from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================
    environment: str = "dev"  # "dev", "prod"
    debug: bool = True

    # ==========================================================================
    # DATABASE (opaque key-value state)
    # ==========================================================================
    database_url: str = "sqlite:///./aegis.db"

    # ==========================================================================
    # API SECURITY
    # ==========================================================================
    api_token: str = ""  # Required in production, optional in dev
    api_token_header: str = "X-API-Key"

    # ==========================================================================
    # CORS
    # ==========================================================================
    cors_origins: str = "*"  # Comma-separated origins, or "*" for all

    # ==========================================================================
    # STRUCTURAL ANALYSIS
    # ==========================================================================
    max_subdomains: int = 3
    max_hostname_length: int = 50

    # ==========================================================================
    # CACHING
    # ==========================================================================
    cache_ttl: int = 24 * 60 * 60  # Cache TTL in seconds (24 hours)

    # ==========================================================================
    # HISTORY
    # ==========================================================================
    history_limit: int = 100

    # ==========================================================================
    # SAFE BROWSING (reputation lookup)
    # ==========================================================================
    safe_browsing_api_key: str = ""  # Empty = lookup disabled
    safe_browsing_endpoint: str = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
    safe_browsing_client_id: str = "URL-Guardian-Extension"
    safe_browsing_client_version: str = "1.0.0"
    safe_browsing_threat_types: str = (
        "MALWARE,SOCIAL_ENGINEERING,UNWANTED_SOFTWARE,"
        "POTENTIALLY_HARMFUL_APPLICATION"
    )
    reputation_timeout: float = 5.0  # Seconds before the lookup fails open

    # ==========================================================================
    # PROTECTION DEFAULTS (overridable at runtime via UPDATE_SETTINGS)
    # ==========================================================================
    protection_enabled: bool = True
    show_warnings: bool = True
    block_high_risk: bool = True
    safe_browsing_enabled: bool = True
    keep_history: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "prod"

    @property
    def cors_origins_list(self) -> list:
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def safe_browsing_threat_types_list(self) -> List[str]:
        return [t.strip() for t in self.safe_browsing_threat_types.split(",") if t.strip()]


settings = Settings()
