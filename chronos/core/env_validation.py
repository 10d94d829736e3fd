"""
Environment validation.

Checks that the configuration is coherent before the API or a worker starts
accepting work: database and Redis URLs, provider credentials for the
configured embedding provider, and chunking/search parameters that would
otherwise fail deep inside a pipeline stage.
"""

import sys
from typing import List, Optional, Tuple

from chronos.core.config import Settings, settings as default_settings
from chronos.core.logging import get_logger

logger = get_logger(__name__)


def validate_database_url(cfg: Settings) -> List[str]:
    """
    Validate database URL configuration.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if not cfg.DATABASE_URL:
        errors.append("DATABASE_URL is not set")
        return errors

    # Check for async driver
    if not cfg.DATABASE_URL.startswith("postgresql+asyncpg://"):
        errors.append(
            "DATABASE_URL must use asyncpg driver (format: postgresql+asyncpg://...)"
        )

    if cfg.is_production and "postgres:postgres@" in cfg.DATABASE_URL:
        errors.append(
            "DATABASE_URL contains default credentials - update with a secure password in production"
        )

    return errors


def validate_redis_url(cfg: Settings) -> List[str]:
    """
    Validate Redis URL configuration.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    for name in ("REDIS_URL", "CELERY_BROKER_URL"):
        value = getattr(cfg, name)
        if not value:
            errors.append(f"{name} is not set")
        elif not value.startswith(("redis://", "rediss://")):
            errors.append(f"{name} must start with redis:// or rediss://")

    return errors


def validate_embedding_settings(cfg: Settings) -> List[str]:
    """
    Validate embedding provider and chunking parameters.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if cfg.EMBEDDING_PROVIDER == "openai" and not cfg.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai")

    if cfg.EMBEDDING_DIMENSION <= 0:
        errors.append("EMBEDDING_DIMENSION must be positive")

    if cfg.EMBEDDING_BATCH_SIZE <= 0:
        errors.append("EMBEDDING_BATCH_SIZE must be positive")

    if not 0 < cfg.CHUNK_MIN_WORDS <= cfg.CHUNK_MAX_WORDS:
        errors.append("CHUNK_MIN_WORDS must be > 0 and <= CHUNK_MAX_WORDS")

    if not 0 <= cfg.CHUNK_OVERLAP_WORDS < cfg.CHUNK_MAX_WORDS:
        errors.append("CHUNK_OVERLAP_WORDS must be >= 0 and < CHUNK_MAX_WORDS")

    if not cfg.OPENAI_API_KEY:
        logger.warning(
            "environment_validation_warning",
            message="OPENAI_API_KEY not set - paid Whisper transcription of uploads is disabled",
        )

    return errors


def validate_search_settings(cfg: Settings) -> List[str]:
    errors = []

    if not 0.0 <= cfg.SEARCH_SIMILARITY_THRESHOLD <= 1.0:
        errors.append("SEARCH_SIMILARITY_THRESHOLD must be within [0, 1]")

    if not 0.0 < cfg.SEARCH_DEDUP_THRESHOLD <= 1.0:
        errors.append("SEARCH_DEDUP_THRESHOLD must be within (0, 1]")

    if cfg.SEARCH_CANDIDATE_MULTIPLIER < 1:
        errors.append("SEARCH_CANDIDATE_MULTIPLIER must be >= 1")

    weight_sum = (
        cfg.RANK_WEIGHT_SIMILARITY
        + cfg.RANK_WEIGHT_RECENCY
        + cfg.RANK_WEIGHT_POPULARITY
        + cfg.RANK_WEIGHT_PERSONALIZATION
    )
    if weight_sum <= 0:
        errors.append("At least one RANK_WEIGHT_* must be positive")

    return errors


def validate_production_settings(cfg: Settings) -> List[str]:
    """
    Validate production-specific settings.

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if not cfg.is_production:
        return errors

    if cfg.DEBUG:
        errors.append("DEBUG must be false in production")

    if "localhost" in cfg.ALLOWED_ORIGINS:
        logger.warning(
            "localhost_in_allowed_origins",
            message="ALLOWED_ORIGINS includes localhost in production - may be insecure",
        )

    if cfg.LOG_FORMAT != "json":
        logger.warning(
            "log_format_not_json",
            message="LOG_FORMAT should be 'json' in production for better log aggregation",
        )

    return errors


def validate_environment(cfg: Optional[Settings] = None) -> Tuple[bool, List[str]]:
    """
    Validate all environment variables.

    Returns:
        (is_valid, list_of_errors)
    """
    cfg = cfg or default_settings
    all_errors: List[str] = []

    logger.info("validating_environment", app_env=cfg.APP_ENV, app_name=cfg.APP_NAME)

    all_errors.extend(validate_database_url(cfg))
    all_errors.extend(validate_redis_url(cfg))
    all_errors.extend(validate_embedding_settings(cfg))
    all_errors.extend(validate_search_settings(cfg))
    all_errors.extend(validate_production_settings(cfg))

    if all_errors:
        logger.error(
            "environment_validation_failed",
            errors=all_errors,
            error_count=len(all_errors),
        )
        return False, all_errors

    logger.info(
        "environment_validation_successful",
        app_env=cfg.APP_ENV,
        embedding_provider=cfg.EMBEDDING_PROVIDER,
        whisper_enabled=bool(cfg.OPENAI_API_KEY),
    )
    return True, []


def validate_or_exit(cfg: Optional[Settings] = None) -> None:
    """
    Validate environment and exit if validation fails.

    This should be called during application startup.
    """
    is_valid, errors = validate_environment(cfg)

    if not is_valid:
        logger.critical("startup_aborted_invalid_environment", errors=errors)
        sys.exit(1)

    logger.info("environment_validation_passed")
