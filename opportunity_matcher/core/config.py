import os
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configuration class for environment variables and service settings.
    """
    # Service settings
    service_name: str = os.getenv("SERVICE_NAME", "opportunity_matcher")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = os.getenv("DEBUG", "True").lower() == "true"

    # Logging settings
    log_level: str = os.getenv("LOG_LEVEL", "DEBUG")
    log_json: bool = os.getenv("LOG_JSON", "False").lower() == "true"
    log_level_datadog: str = os.getenv("LOG_LEVEL_DATADOG", "WARNING")
    hostname: str = os.getenv("HOSTNAME", "unknown")

    # MongoDB settings (catalog, profiles, feedback, system config)
    mongodb: str = os.getenv("MONGODB", "mongodb://localhost:27017")
    mongodb_database: str = os.getenv("MONGODB_DATABASE", "edutu")
    mongodb_timeout_ms: int = int(os.getenv("MONGODB_TIMEOUT_MS", "5000"))
    catalog_collection: str = os.getenv("CATALOG_COLLECTION", "scholarships")
    profile_collection: str = os.getenv("PROFILE_COLLECTION", "users")
    feedback_collection: str = os.getenv("FEEDBACK_COLLECTION", "recommendation_feedback")
    interest_collection: str = os.getenv("INTEREST_COLLECTION", "user_interest_tallies")
    system_config_collection: str = os.getenv("SYSTEM_CONFIG_COLLECTION", "system_config")
    insights_collection: str = os.getenv("INSIGHTS_COLLECTION", "learning_insights")
    search_patterns_collection: str = os.getenv("SEARCH_PATTERNS_COLLECTION", "user_search_patterns")

    # PostgreSQL / pgvector settings
    database_url: str = os.getenv("DATABASE_URL", "")
    db_pool_min_size: int = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
    db_pool_max_size: int = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
    db_pool_timeout: float = float(os.getenv("DB_POOL_TIMEOUT", "30.0"))
    db_pool_max_idle: int = int(os.getenv("DB_POOL_MAX_IDLE", "300"))
    db_pool_max_lifetime: int = int(os.getenv("DB_POOL_MAX_LIFETIME", "3600"))
    vector_backend: str = os.getenv("VECTOR_BACKEND", "pgvector")  # Options: pgvector, memory
    vector_ivf_lists: int = int(os.getenv("VECTOR_IVF_LISTS", "100"))
    embedding_dimensions: int = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))

    # Embedding providers, tried in order
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    openai_max_batch_size: int = int(os.getenv("OPENAI_MAX_BATCH_SIZE", "2048"))
    fallback_embedder_api_key: str = os.getenv("FALLBACK_EMBEDDER_API_KEY", "")
    fallback_embedder_base_url: str = os.getenv(
        "FALLBACK_EMBEDDER_BASE_URL", "https://api.deepinfra.com/v1/openai"
    )
    fallback_embedder_model: str = os.getenv("FALLBACK_EMBEDDER_MODEL", "BAAI/bge-large-en-v1.5")
    fallback_embedder_max_batch_size: int = int(os.getenv("FALLBACK_EMBEDDER_MAX_BATCH_SIZE", "96"))
    embedding_timeout_seconds: float = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", "30.0"))
    embedding_retry_attempts: int = int(os.getenv("EMBEDDING_RETRY_ATTEMPTS", "2"))
    embedding_retry_backoff_seconds: float = float(os.getenv("EMBEDDING_RETRY_BACKOFF_SECONDS", "1.0"))
    embedding_retry_backoff_max_seconds: float = float(os.getenv("EMBEDDING_RETRY_BACKOFF_MAX_SECONDS", "8.0"))
    provider_failure_threshold: int = int(os.getenv("PROVIDER_FAILURE_THRESHOLD", "5"))
    provider_reset_timeout_seconds: float = float(os.getenv("PROVIDER_RESET_TIMEOUT_SECONDS", "60.0"))

    # Store timeouts
    store_timeout_seconds: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "15.0"))

    # Sync settings
    sync_batch_size: int = int(os.getenv("SYNC_BATCH_SIZE", "50"))
    sync_batch_delay_seconds: float = float(os.getenv("SYNC_BATCH_DELAY_SECONDS", "1.0"))

    # Recommendation settings
    default_similarity_threshold: float = float(os.getenv("DEFAULT_SIMILARITY_THRESHOLD", "0.6"))
    similar_items_threshold: float = float(os.getenv("SIMILAR_ITEMS_THRESHOLD", "0.7"))
    search_threshold: float = float(os.getenv("SEARCH_THRESHOLD", "0.6"))
    fallback_similarity: float = float(os.getenv("FALLBACK_SIMILARITY", "0.5"))
    default_recommendation_count: int = int(os.getenv("DEFAULT_RECOMMENDATION_COUNT", "3"))

    # Learning loop settings
    feedback_batch_size: int = int(os.getenv("FEEDBACK_BATCH_SIZE", "100"))
    feedback_window_days: int = int(os.getenv("FEEDBACK_WINDOW_DAYS", "7"))
    feedback_retention_days: int = int(os.getenv("FEEDBACK_RETENTION_DAYS", "90"))
    similarity_threshold_floor: float = float(os.getenv("SIMILARITY_THRESHOLD_FLOOR", "0.6"))
    similarity_threshold_scale: float = float(os.getenv("SIMILARITY_THRESHOLD_SCALE", "0.9"))
    default_helpful_ratio: float = float(os.getenv("DEFAULT_HELPFUL_RATIO", "0.7"))
    preference_refresh_min_events: int = int(os.getenv("PREFERENCE_REFRESH_MIN_EVENTS", "3"))
    top_interest_categories: int = int(os.getenv("TOP_INTEREST_CATEGORIES", "5"))
    top_search_keywords: int = int(os.getenv("TOP_SEARCH_KEYWORDS", "5"))
    insights_window_hours: int = int(os.getenv("INSIGHTS_WINDOW_HOURS", "24"))
    insights_top_signals: int = int(os.getenv("INSIGHTS_TOP_SIGNALS", "5"))

    # Rate limiting (advisory, in-memory)
    rate_limit_window_seconds: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    rate_limit_max_requests: int = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "50"))
    rate_limit_max_keys: int = int(os.getenv("RATE_LIMIT_MAX_KEYS", "10000"))

    # Scheduler intervals (seconds)
    scheduler_enabled: bool = os.getenv("SCHEDULER_ENABLED", "True").lower() == "true"
    sync_interval_seconds: int = int(os.getenv("SYNC_INTERVAL_SECONDS", str(60 * 60)))
    maintenance_interval_seconds: int = int(os.getenv("MAINTENANCE_INTERVAL_SECONDS", str(6 * 60 * 60)))
    stats_interval_seconds: int = int(os.getenv("STATS_INTERVAL_SECONDS", str(30 * 60)))
    cleanup_interval_seconds: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", str(24 * 60 * 60)))
    learning_interval_seconds: int = int(os.getenv("LEARNING_INTERVAL_SECONDS", str(24 * 60 * 60)))
    insights_interval_seconds: int = int(os.getenv("INSIGHTS_INTERVAL_SECONDS", str(24 * 60 * 60)))
    task_timeout_seconds: float = float(os.getenv("TASK_TIMEOUT_SECONDS", str(30 * 60)))

    # Metrics settings
    metrics_enabled: bool = os.getenv("METRICS_ENABLED", "False").lower() == "true"
    metrics_prefix: str = os.getenv("METRICS_PREFIX", "opportunity_matcher")
    metrics_environment: str = os.getenv("METRICS_ENVIRONMENT", os.getenv("ENVIRONMENT", "development"))
    metrics_sample_rate: float = float(os.getenv("METRICS_SAMPLE_RATE", "1.0"))
    metrics_statsd_host: str = os.getenv("METRICS_STATSD_HOST", "127.0.0.1")
    metrics_statsd_port: int = int(os.getenv("METRICS_STATSD_PORT", "8125"))

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

__all__ = ["Settings", "settings"]
