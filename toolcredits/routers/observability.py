from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session
from sqlalchemy import func, text
import time
import psutil
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

from toolcredits.db import get_db, get_redis
from toolcredits.config import settings
from toolcredits.models import (
    GenerationJob, Profile, StripeEventLog, User, JOB_COMPLETED, JOB_FAILED, ACTIVE_JOB_STATUSES,
)

router = APIRouter()
logger = logging.getLogger(__name__)

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

@router.get("/health")
async def basic_health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "timestamp": _utcnow().isoformat()}

@router.get("/readyz")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check for container orchestration.
    Returns 200 if the database and Redis are reachable.
    """
    checks = {}
    all_healthy = True

    try:
        start_time = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = int((time.time() - start_time) * 1000)
        checks["database"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        all_healthy = False

    # Redis only carries balance push updates, so it degrades rather than fails readiness
    try:
        redis_client = get_redis()
        start_time = time.time()
        redis_client.ping()
        latency_ms = int((time.time() - start_time) * 1000)
        checks["redis"] = {"status": "healthy", "latency_ms": latency_ms}
    except Exception as e:
        checks["redis"] = {"status": "degraded", "error": str(e)}

    checks["stripe"] = {"status": "configured" if settings.stripe_secret_key else "not_configured"}

    response_data = {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _utcnow().isoformat()
    }

    if not all_healthy:
        raise HTTPException(status_code=503, detail=response_data)

    return response_data

@router.get("/livez")
async def liveness_check():
    """
    Liveness check.
    Should only fail if the application is in an unrecoverable state.
    """
    try:
        memory = psutil.virtual_memory()
        if memory.percent > 95:
            raise Exception(f"Critical memory usage: {memory.percent}%")

        disk = psutil.disk_usage('/')
        disk_percent = (disk.used / disk.total) * 100
        if disk_percent > 95:
            raise Exception(f"Critical disk usage: {disk_percent:.1f}%")

        return {
            "status": "alive",
            "memory_percent": memory.percent,
            "disk_percent": round(disk_percent, 1),
            "timestamp": _utcnow().isoformat()
        }
    except Exception as e:
        logger.critical(f"Liveness check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Application not alive: {str(e)}")

@router.get("/metrics")
async def prometheus_metrics(db: Session = Depends(get_db)):
    """
    Prometheus-style metrics: users, credits in circulation, jobs and Stripe events.
    """
    try:
        since = _utcnow() - timedelta(hours=24)
        total_users = db.query(User).count()
        credits_outstanding = db.query(func.coalesce(func.sum(Profile.credit_balance), 0)).scalar()

        jobs_active = db.query(GenerationJob).filter(GenerationJob.status.in_(ACTIVE_JOB_STATUSES)).count()
        jobs_completed_24h = db.query(GenerationJob).filter(
            GenerationJob.status == JOB_COMPLETED, GenerationJob.created_at >= since
        ).count()
        jobs_failed_24h = db.query(GenerationJob).filter(
            GenerationJob.status == JOB_FAILED, GenerationJob.created_at >= since
        ).count()

        stripe_events_processed_24h = db.query(StripeEventLog).filter(
            StripeEventLog.processed.is_(True), StripeEventLog.created_at >= since
        ).count()
        stripe_events_dead_letter = db.query(StripeEventLog).filter(StripeEventLog.dead_letter.is_(True)).count()
        stripe_events_pending = db.query(StripeEventLog).filter(
            StripeEventLog.processed.is_(False), StripeEventLog.dead_letter.is_(False)
        ).count()

        memory = psutil.virtual_memory()
        cpu_percent = psutil.cpu_percent(interval=None)
        disk = psutil.disk_usage('/')
        disk_percent = (disk.used / disk.total) * 100

        metrics = f"""# HELP toolcredits_users_total Total number of registered users
# TYPE toolcredits_users_total gauge
toolcredits_users_total {total_users}

# HELP toolcredits_credits_outstanding Sum of all profile balances
# TYPE toolcredits_credits_outstanding gauge
toolcredits_credits_outstanding {credits_outstanding}

# HELP toolcredits_jobs_active Generation jobs pending or processing
# TYPE toolcredits_jobs_active gauge
toolcredits_jobs_active {jobs_active}

# HELP toolcredits_jobs_completed_24h Jobs created in the last 24h that completed
# TYPE toolcredits_jobs_completed_24h gauge
toolcredits_jobs_completed_24h {jobs_completed_24h}

# HELP toolcredits_jobs_failed_24h Jobs created in the last 24h that failed
# TYPE toolcredits_jobs_failed_24h gauge
toolcredits_jobs_failed_24h {jobs_failed_24h}

# HELP toolcredits_stripe_events_processed Stripe events processed successfully in last 24h
# TYPE toolcredits_stripe_events_processed gauge
toolcredits_stripe_events_processed {stripe_events_processed_24h}

# HELP toolcredits_stripe_events_dead_letter Stripe events given up after repeated failures
# TYPE toolcredits_stripe_events_dead_letter gauge
toolcredits_stripe_events_dead_letter {stripe_events_dead_letter}

# HELP toolcredits_stripe_events_pending Stripe events pending retry
# TYPE toolcredits_stripe_events_pending gauge
toolcredits_stripe_events_pending {stripe_events_pending}

# HELP toolcredits_memory_usage_percent Memory usage percentage
# TYPE toolcredits_memory_usage_percent gauge
toolcredits_memory_usage_percent {memory.percent}

# HELP toolcredits_cpu_usage_percent CPU usage percentage
# TYPE toolcredits_cpu_usage_percent gauge
toolcredits_cpu_usage_percent {cpu_percent}

# HELP toolcredits_disk_usage_percent Disk usage percentage
# TYPE toolcredits_disk_usage_percent gauge
toolcredits_disk_usage_percent {disk_percent:.1f}
"""

        return Response(content=metrics, media_type="text/plain")

    except Exception as e:
        logger.error(f"Failed to generate metrics: {e}")
        raise HTTPException(status_code=500, detail="Metrics generation failed")

@router.get("/debug")
async def debug_info(db: Session = Depends(get_db)):
    """Debug information, only available in debug mode."""
    if not settings.debug:
        raise HTTPException(status_code=404, detail="Debug endpoint not available")

    since = _utcnow() - timedelta(hours=1)
    recent_job_failures = db.query(GenerationJob).filter(
        GenerationJob.status == JOB_FAILED, GenerationJob.updated_at >= since
    ).count()
    recent_stripe_failures = db.query(StripeEventLog).filter(
        StripeEventLog.processed.is_(False), StripeEventLog.created_at >= since
    ).count()

    memory = psutil.virtual_memory()
    return {
        "system": {
            "memory_percent": memory.percent,
            "cpu_count": psutil.cpu_count(),
        },
        "application": {
            # only the driver, never credentials
            "database_driver": urlparse(settings.database_url).scheme,
            "recent_job_failures_1h": recent_job_failures,
            "recent_stripe_failures_1h": recent_stripe_failures,
        },
        "timestamp": _utcnow().isoformat()
    }
