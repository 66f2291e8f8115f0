#!/usr/bin/env python3
"""
Startup script with configuration validation.
Fails fast if the database is unreachable or production secrets are missing.
"""
import sys
import logging
import asyncio
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

def setup_logging():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    return logging.getLogger(__name__)

async def check_database() -> bool:
    logger = logging.getLogger(__name__)
    try:
        from sqlalchemy import text
        from toolcredits.db import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection validated")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False

async def check_redis() -> bool:
    """Redis only carries balance push updates; a failure is reported but not fatal."""
    logger = logging.getLogger(__name__)
    try:
        from toolcredits.db import get_redis

        get_redis().ping()
        logger.info("Redis connection validated")
    except Exception as e:
        logger.warning(f"Redis unavailable, realtime balance updates disabled: {e}")
    return True

async def check_providers() -> bool:
    logger = logging.getLogger(__name__)
    from toolcredits.config import settings, secret_or_none

    if secret_or_none(settings.stripe_secret_key) and not settings.stripe_secret_key.startswith(("sk_", "rk_")):
        logger.error("Invalid Stripe secret key format")
        return False
    configured = [name for name, value in (
        ("stripe", settings.stripe_secret_key),
        ("shotstack", settings.shotstack_api_key),
        ("replicate", settings.replicate_api_token),
    ) if secret_or_none(value)]
    logger.info(f"Providers configured from environment: {', '.join(configured) or 'none'}")
    return True

def validate_production_readiness() -> bool:
    logger = logging.getLogger(__name__)
    from toolcredits.config import settings

    required = [
        ("Database URL", settings.database_url),
        ("JWT Secret", settings.jwt_secret),
        ("Service Key", settings.service_key),
        ("Stripe Secret Key", settings.stripe_secret_key),
        ("Stripe Webhook Secret", settings.stripe_webhook_secret),
    ]
    missing = [name for name, value in required if not value or str(value).strip() == ""]
    if missing:
        logger.error(f"Missing production configurations: {', '.join(missing)}")
        return False
    if settings.stripe_secret_key.startswith("sk_test_"):
        logger.error("Using Stripe test keys in production environment")
        return False
    if len(settings.jwt_secret) < 32:
        logger.error("JWT secret too short for production (minimum 32 characters)")
        return False
    if settings.debug:
        logger.error("Debug mode must be off in production")
        return False
    logger.info("Production readiness validation passed")
    return True

async def validate_configuration() -> bool:
    logger = setup_logging()
    try:
        from toolcredits.config import settings, is_production

        logger.info(f"Environment: {settings.environment}, debug: {settings.debug}")
        results = await asyncio.gather(check_database(), check_redis(), check_providers())
        if not all(results):
            logger.error("Runtime configuration validation failed")
            return False
        if is_production() and not validate_production_readiness():
            return False
        return True
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        return False

async def main():
    if not await validate_configuration():
        print("\nConfiguration validation failed. Server startup aborted.")
        sys.exit(1)

    import uvicorn
    from toolcredits.config import settings, is_production

    config = uvicorn.Config(
        "toolcredits.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=not is_production(),
    )
    server = uvicorn.Server(config)
    await server.serve()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
