from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "ShelfResolver"
    debug: bool = False

    database_url: str = "postgresql+asyncpg://localhost:5432/shelfresolver"

    # Feature flag for the AI second pass over unresolved items
    # Default: False (unresolved items become manual entries)
    enable_second_pass: bool = False

    provider_retries: int = 2

    openlibrary_base_url: str = "https://openlibrary.org"
    openlibrary_covers_url: str = "https://covers.openlibrary.org"
    openlibrary_timeout: float = 4.0
    openlibrary_concurrency: int = 5

    hardcover_api_token: str = ""
    hardcover_base_url: str = "https://api.hardcover.app/v1/graphql"
    hardcover_timeout: float = 8.0
    hardcover_concurrency: int = 3
    hardcover_search_limit: int = 5

    tmdb_api_key: str = ""
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_image_base_url: str = "https://image.tmdb.org/t/p"
    tmdb_timeout: float = 8.0
    tmdb_concurrency: int = 3

    igdb_client_id: str = ""
    igdb_client_secret: str = ""
    igdb_base_url: str = "https://api.igdb.com/v4"
    igdb_auth_url: str = "https://id.twitch.tv/oauth2/token"
    igdb_timeout: float = 8.0
    igdb_max_results: int = 8
    igdb_concurrency: int = 5

    # Per-provider kill switches (DISABLE_HARDCOVER=true etc.); a disabled
    # provider drops out of its domain's fallback chain
    disable_hardcover: bool = False
    disable_openlibrary: bool = False
    disable_tmdb: bool = False
    disable_igdb: bool = False

    # Book hits scoring below this completeness (0-100, or a 0-1 fraction)
    # fall through to the next book provider
    book_metadata_min_score: float = 55

    anthropic_api_key: str = ""
    ai_model: str = "claude-sonnet-4-20250514"
    ai_max_tokens: int = 4096
    ai_batch_max: int = 30
    ai_relookup_enabled: bool = True

    match_concurrency: int = 4


settings = Settings()


# =============================================================================
# CONFIDENCE THRESHOLDS
# =============================================================================

# Minimum AI confidence before a fuzzy fingerprint is learned
# (below this the OCR correction is not trusted enough to become identity)
OCR_CONFIDENCE_THRESHOLD = 0.7

# AI resolutions below this confidence are flagged for review
AI_REVIEW_CONFIDENCE_THRESHOLD = 0.35

# Source tag recorded on learned fuzzy fingerprints
FUZZY_FINGERPRINT_SOURCE = "vision-ocr"
