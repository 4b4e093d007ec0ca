"""Application configuration using Pydantic settings."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # App Settings
    debug: bool = False
    log_level: str = "INFO"

    # ==========================================================================
    # Target Site
    # ==========================================================================
    base_search_url: str = "https://www.cargurus.ca/Cars/l-Used-SUV-Crossover-bg7"
    detail_link_pattern: str = "vdp.action"  # Substring identifying detail-page links
    structured_endpoint_pattern: str = "detailListingJson.action"  # Intercepted JSON endpoint
    results_page_fragment: str = "resultsPage"

    # ==========================================================================
    # Timeouts (milliseconds unless noted)
    # ==========================================================================
    listing_navigation_timeout_ms: int = 90000
    detail_navigation_timeout_ms: int = 60000
    structured_payload_deadline_seconds: float = 35.0
    detail_settle_ms: int = 2000  # Wait after the race settles before reading the DOM
    listing_settle_ms: int = 5000  # Wait after the base search page loads
    page_settle_ms: int = 3000  # Wait after jumping to a results page
    filter_settle_ms: int = 3000  # Wait after the last filter before capturing the URL
    interaction_timeout_ms: int = 2000

    # ==========================================================================
    # Human-plausible pacing
    # ==========================================================================
    min_visit_delay_seconds: float = 2.0
    max_visit_delay_seconds: float = 5.0
    scroll_rounds: int = 3
    scroll_step_px: int = 1000
    scroll_pause_ms: int = 2000

    # ==========================================================================
    # Browser
    # ==========================================================================
    headless: bool = True
    browser_locale: str = "en-CA"
    browser_timezone: str = "America/Toronto"
    browser_latitude: float = 43.6532
    browser_longitude: float = -79.3832
    viewport_width: int = 1920
    viewport_height: int = 1080
    browser_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # ==========================================================================
    # Storage
    # ==========================================================================
    state_backend: str = "file"  # "file" or "redis"
    state_path: str = "data/state.json"
    state_key: str = "SCRAPER_STATE"
    redis_url: str = "redis://localhost:6379/0"

    dataset_backend: str = "jsonl"  # "jsonl" or "sql"
    dataset_path: str = "data/dataset.jsonl"
    database_url: str = "sqlite+aiosqlite:///data/carscout.db"

    # ==========================================================================
    # Downstream forwarding
    # ==========================================================================
    forward_webhook_url: str = ""  # Empty disables forwarding
    forward_timeout_seconds: float = 30.0

    # ==========================================================================
    # Run lock (guards the cursor against concurrent runs)
    # ==========================================================================
    run_lock_enabled: bool = False
    run_lock_ttl_seconds: int = 7200

    # Debug artifacts / metrics
    debug_artifacts_path: str = "data/debug"
    metrics_textfile: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class SearchFilters(BaseModel):
    """UI filters applied to the search results before paginating."""

    makes: list[str] = Field(
        default_factory=lambda: ["Ford", "GMC", "Chevrolet", "Toyota", "Cadillac", "Ram", "Jeep"]
    )
    body_types: list[str] = Field(default_factory=lambda: ["SUV / Crossover", "Pickup Truck"])
    max_mileage: Optional[int] = 140000
    min_price: Optional[int] = 35000
    deal_ratings: list[str] = Field(
        default_factory=lambda: ["GREAT_PRICE", "GOOD_PRICE", "FAIR_PRICE"]
    )


class RunConfig(BaseModel):
    """Per-run input, validated with defaults before the engine starts."""

    page: Optional[int] = Field(default=None, ge=1)  # Explicit override, never persisted
    max_pages: int = Field(default=73, ge=1)
    max_results: int = Field(default=24, ge=1)
    batch_size: int = Field(default=1, ge=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    location: str = "H3H"
    search_radius: int = Field(default=100, ge=1)

    # Variations between deployments
    apply_location_filter: bool = False
    location_before_filters: bool = True
    forward_enabled: bool = True


settings = Settings()
