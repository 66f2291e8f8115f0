from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import settings

_engine_kw = {"future": True}
if settings.database_url.startswith("sqlite"):
    _engine_kw["connect_args"] = {"check_same_thread": False, "timeout": 30}
else:
    _engine_kw["pool_pre_ping"] = True

engine = create_engine(settings.database_url, **_engine_kw)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Redis helper
_redis_client = None
def get_redis():
    """Return a Redis client from settings.redis_url."""
    global _redis_client
    if _redis_client is None:
        try:
            import redis
            _redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        except Exception as e:
            raise RuntimeError(f"Redis initialization failed: {e}")
    return _redis_client


_async_redis_client = None
def get_async_redis():
    """Return an asyncio Redis client for long-lived subscriptions."""
    global _async_redis_client
    if _async_redis_client is None:
        try:
            import redis.asyncio
            _async_redis_client = redis.asyncio.Redis.from_url(settings.redis_url, decode_responses=True)
        except Exception as e:
            raise RuntimeError(f"Redis initialization failed: {e}")
    return _async_redis_client
