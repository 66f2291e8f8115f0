"""Background generation jobs.

Jobs are created ``processing`` with ``credits_deducted=False`` and finalized by
a sweep that polls the job's render or transcription provider. The sweep is
triggered by clients or by a scheduler, so several sweeps may look at the same
job at once. Completion is claimed with a conditional UPDATE on the job status;
only the sweep that wins the claim takes credits. An uncharged job is claimed
only while ``credits_deducted`` is still false.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..auth import Caller
from ..config import settings
from ..exceptions import (
    ConfigurationError, InsufficientCreditsError, NotFoundError, PermissionDenied, ProfileNotFoundError,
    ValidationFailed,
)
from ..models import (
    ACTIVE_JOB_STATUSES, JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, GenerationJob, User, UserOutput,
)
from ..providers.render import FAILED, SUCCEEDED, RenderProvider, RenderStatus, ReplicateProvider
from . import credits as ledger
from .realtime import publish_balance

logger = logging.getLogger(__name__)

VIDEO_MULTI_SUBTITLE = "video_multi_subtitle"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def is_timed_out(job: GenerationJob, now: datetime, timeout_minutes: int = None) -> bool:
    if job.created_at is None:
        return False
    limit = timedelta(minutes=settings.job_timeout_minutes if timeout_minutes is None else timeout_minutes)
    return now - _as_utc(job.created_at) > limit


class JobPoller:
    """Sweeps active jobs and moves them to a terminal state."""

    def __init__(self, db: Session, providers: Dict[str, RenderProvider], now: Optional[datetime] = None):
        self.db = db
        self.providers = providers
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def active_jobs(self, caller: Caller):
        query = (
            select(GenerationJob)
            .where(GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(GenerationJob.created_at.asc())
            .limit(settings.job_sweep_limit)
        )
        if not caller.sees_all_jobs:
            query = query.where(GenerationJob.user_id == caller.user.id)
        return list(self.db.execute(query).scalars())

    async def sweep(self, caller: Caller) -> Dict[str, int]:
        jobs = self.active_jobs(caller)
        if not jobs:
            return {"processed": 0, "total": 0}
        if caller.is_service:
            logger.info(f"Scheduled sweep over {len(jobs)} active jobs")

        processed = 0
        for job in jobs:
            try:
                if await self.process_job(job):
                    processed += 1
            except Exception:
                logger.exception(f"Error processing job {job.id}")
                self.db.rollback()
        return {"processed": processed, "total": len(jobs)}

    async def process_job(self, job: GenerationJob) -> bool:
        """Advance one job. Returns True when the job reached a terminal state."""
        if is_timed_out(job, self.now):
            return self.fail_job(job, f"Job timed out after {settings.job_timeout_minutes} minutes")

        params = job.input_params or {}
        if job.tool_type == VIDEO_MULTI_SUBTITLE and not job.external_job_id:
            # transcription was skipped; the source video is the result
            return self.finalize_job(job, RenderStatus(SUCCEEDED, output_url=params.get("videoUrl")))

        provider = self.providers.get(job.tool_type)
        if provider is None or not job.external_job_id:
            logger.debug(f"No poller for job {job.id} ({job.tool_type})")
            return False

        status = await provider.get_status(job.external_job_id)
        if status.state == SUCCEEDED:
            if not status.output_url:
                status.output_url = params.get("videoUrl")
            return self.finalize_job(job, status)
        if status.state == FAILED:
            return self.fail_job(job, status.error or "Render failed")
        return False

    def fail_job(self, job: GenerationJob, message: str) -> bool:
        result = self.db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job.id, GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(status=JOB_FAILED, error_message=message)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 1:
            logger.warning(f"Job {job.id} failed: {message}")
            return True
        return False

    def finalize_job(self, job: GenerationJob, status: RenderStatus) -> bool:
        already_charged = bool(job.credits_deducted)
        claim = (
            update(GenerationJob)
            .where(GenerationJob.id == job.id, GenerationJob.status.in_(ACTIVE_JOB_STATUSES))
            .values(
                status=JOB_COMPLETED,
                credits_deducted=True,
                output_url=status.output_url,
                thumbnail_url=status.thumbnail_url,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        if not already_charged:
            claim = claim.where(GenerationJob.credits_deducted.is_(False))
        claimed = self.db.execute(claim)
        if claimed.rowcount != 1:
            # another sweep got here first
            self.db.rollback()
            return False

        new_balance = None
        if not already_charged and not job.owner_is_admin and (job.credits_cost or 0) > 0:
            try:
                new_balance = ledger.apply_deduction(
                    self.db, job.user_id, job.credits_cost, f"Background: {job.tool_type}"
                )
            except InsufficientCreditsError:
                self.db.rollback()
                return self.fail_job(job, "Insufficient credits to finalize job")
            except ProfileNotFoundError:
                self.db.rollback()
                return self.fail_job(job, "User profile not found")

        params = job.input_params or {}
        if status.content:
            output_type = "subtitle"
        else:
            output_type = "video" if status.output_url else "text"
        self.db.add(UserOutput(
            user_id=job.user_id,
            tool_id=job.tool_type,
            tool_name=params.get("tool_name") or job.tool_type,
            output_type=output_type,
            content=status.content,
            file_url=status.output_url,
            thumbnail_url=status.thumbnail_url,
        ))
        self.db.commit()

        if new_balance is not None:
            publish_balance(job.user_id, new_balance)
        logger.info(f"Job {job.id} completed")
        return True


async def start_video_multi(
    db: Session,
    user: User,
    video_url: str,
    auto_subtitles: bool = False,
    subtitle_language: str = "my",
    credit_cost: int = 10,
    replicate: Optional[ReplicateProvider] = None,
) -> Dict[str, Any]:
    """Create a video multi-tool job, optionally starting Whisper subtitles first.

    A Whisper start that does not answer within ``whisper_timeout_seconds`` does
    not fail the request: the job is created without a transcription and
    ``whisperSkipped`` is returned.
    """
    if not video_url:
        raise ValidationFailed("Video URL is required")
    if credit_cost < 0:
        raise ValidationFailed("creditCost must not be negative", creditCost=credit_cost)

    if not user.is_admin:
        balance = ledger.current_balance(db, user.id)
        if balance is None or balance < credit_cost:
            raise InsufficientCreditsError(required=credit_cost, available=balance or 0, user_id=str(user.id))

    external_job_id = None
    whisper_skipped = False
    if auto_subtitles:
        if replicate is None:
            raise ConfigurationError("replicate_api_token", "Replicate API key not configured")
        timeout = settings.whisper_timeout_seconds
        try:
            external_job_id = await asyncio.wait_for(
                replicate.start_transcription(video_url, settings.whisper_model_version, timeout),
                timeout=timeout,
            )
            logger.info(f"Whisper prediction started: {external_job_id}")
        except (asyncio.TimeoutError, httpx.TimeoutException):
            whisper_skipped = True
            logger.warning(f"Whisper did not start within {timeout}s, continuing without subtitles")

    job = GenerationJob(
        user_id=user.id,
        tool_type=VIDEO_MULTI_SUBTITLE,
        status=JOB_PROCESSING,
        credits_cost=credit_cost,
        credits_deducted=False,
        external_job_id=external_job_id,
        input_params={
            "videoUrl": video_url,
            "autoSubtitles": bool(auto_subtitles),
            "subtitleLanguage": subtitle_language,
            "isAdmin": user.is_admin,
            "whisperSkipped": whisper_skipped,
            "tool_name": "Video Multi-Tool",
        },
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Job created: {job.id}, externalId: {external_job_id}")

    return {
        "success": True,
        "jobId": str(job.id),
        "whisperSkipped": whisper_skipped,
        "message": "Processing started. Poll check-job-status for updates.",
    }


def get_job_for(db: Session, caller: Caller, job_id) -> GenerationJob:
    job = db.get(GenerationJob, job_id)
    if job is None:
        raise NotFoundError("Job", str(job_id))
    if not caller.sees_all_jobs and job.user_id != caller.user.id:
        raise PermissionDenied("Not your job")
    return job
