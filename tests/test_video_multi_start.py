import asyncio
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from toolcredits.config import settings
from toolcredits.exceptions import (
    ConfigurationError, ExternalServiceError, InsufficientCreditsError, ValidationFailed,
)
from toolcredits.main import app
from toolcredits.models import GenerationJob, User
from toolcredits.providers.render import ReplicateProvider
from toolcredits.services.app_settings import get_replicate
from toolcredits.services.jobs import start_video_multi

VIDEO = "https://cdn.example.com/uploads/clip.mp4"


class SlowReplicate:
    """Never answers inside the Whisper window."""

    def __init__(self, delay: float = 1.0):
        self.delay = delay
        self.started = 0

    async def start_transcription(self, audio_url, version, timeout):
        self.started += 1
        await asyncio.sleep(self.delay)
        return "too-late"


def replicate_with(handler) -> ReplicateProvider:
    return ReplicateProvider("token", transport=httpx.MockTransport(handler))


def jobs_for(db: Session, user_id):
    return db.query(GenerationJob).filter(GenerationJob.user_id == user_id).all()


@pytest.fixture
def short_whisper_window(monkeypatch):
    monkeypatch.setattr(settings, "whisper_timeout_seconds", 0.05)


class TestStartVideoMulti:

    @pytest.mark.asyncio
    async def test_whisper_timeout_still_creates_job(self, db_session: Session, test_user, short_whisper_window):
        replicate = SlowReplicate()

        result = await start_video_multi(db_session, test_user, VIDEO, auto_subtitles=True, replicate=replicate)

        assert result["success"] is True
        assert result["whisperSkipped"] is True
        assert replicate.started == 1
        job = db_session.get(GenerationJob, uuid.UUID(result["jobId"]))
        assert job.status == "processing"
        assert job.credits_deducted is False
        assert job.external_job_id is None
        assert job.credits_cost == 10
        assert job.input_params["whisperSkipped"] is True
        assert job.input_params["videoUrl"] == VIDEO

    @pytest.mark.asyncio
    async def test_http_timeout_counts_as_skipped(self, db_session: Session, test_user):
        def handler(request):
            raise httpx.ReadTimeout("no answer", request=request)

        result = await start_video_multi(
            db_session, test_user, VIDEO, auto_subtitles=True, replicate=replicate_with(handler)
        )
        assert result["whisperSkipped"] is True
        assert len(jobs_for(db_session, test_user.id)) == 1

    @pytest.mark.asyncio
    async def test_prediction_id_is_stored(self, db_session: Session, test_user):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = request.content
            return httpx.Response(201, json={"id": "pred-123", "status": "starting"})

        result = await start_video_multi(
            db_session, test_user, VIDEO, auto_subtitles=True, subtitle_language="en",
            credit_cost=12, replicate=replicate_with(handler),
        )

        assert result["whisperSkipped"] is False
        job = db_session.get(GenerationJob, uuid.UUID(result["jobId"]))
        assert job.external_job_id == "pred-123"
        assert job.credits_cost == 12
        assert job.input_params["subtitleLanguage"] == "en"
        assert VIDEO.encode() in seen["body"]

    @pytest.mark.asyncio
    async def test_without_subtitles_replicate_is_not_needed(self, db_session: Session, test_user):
        result = await start_video_multi(db_session, test_user, VIDEO)
        assert result["whisperSkipped"] is False
        assert result["message"].startswith("Processing started")

    @pytest.mark.asyncio
    async def test_whisper_error_is_upstream_failure(self, db_session: Session, test_user):
        def handler(request):
            return httpx.Response(500, json={"detail": "model exploded"})

        with pytest.raises(ExternalServiceError):
            await start_video_multi(db_session, test_user, VIDEO, auto_subtitles=True, replicate=replicate_with(handler))
        assert jobs_for(db_session, test_user.id) == []

    @pytest.mark.asyncio
    async def test_subtitles_without_replicate_key(self, db_session: Session, test_user):
        with pytest.raises(ConfigurationError):
            await start_video_multi(db_session, test_user, VIDEO, auto_subtitles=True, replicate=None)

    @pytest.mark.asyncio
    async def test_balance_checked_before_starting(self, db_session: Session, user_factory):
        user = user_factory(credits=9)
        replicate = SlowReplicate()
        with pytest.raises(InsufficientCreditsError):
            await start_video_multi(db_session, user, VIDEO, auto_subtitles=True, replicate=replicate)
        assert replicate.started == 0
        assert jobs_for(db_session, user.id) == []

    @pytest.mark.asyncio
    async def test_user_without_profile_is_refused(self, db_session: Session):
        user = User(email=f"noprofile_{uuid.uuid4().hex[:8]}@example.com")
        db_session.add(user)
        db_session.commit()

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await start_video_multi(db_session, user, VIDEO, credit_cost=10)

        assert exc_info.value.details["balance"] == 0
        assert exc_info.value.details["required"] == 10
        assert jobs_for(db_session, user.id) == []

    @pytest.mark.asyncio
    async def test_admin_needs_no_balance(self, db_session: Session, user_factory):
        admin = user_factory(credits=0, role="admin")
        result = await start_video_multi(db_session, admin, VIDEO)
        job = db_session.get(GenerationJob, uuid.UUID(result["jobId"]))
        assert job.input_params["isAdmin"] is True

    @pytest.mark.asyncio
    async def test_missing_video_url(self, db_session: Session, test_user):
        with pytest.raises(ValidationFailed):
            await start_video_multi(db_session, test_user, "")


class TestVideoMultiRoute:

    def test_route_reports_skipped_whisper(self, test_client: TestClient, test_user, headers_for,
                                           short_whisper_window):
        app.dependency_overrides[get_replicate] = lambda: SlowReplicate()
        try:
            response = test_client.post(
                "/jobs/video-multi/start",
                json={"videoUrl": VIDEO, "autoSubtitles": True},
                headers=headers_for(test_user),
            )
        finally:
            app.dependency_overrides.pop(get_replicate, None)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["whisperSkipped"] is True
        assert body["jobId"]

    def test_route_errors(self, test_client: TestClient, user_factory, headers_for):
        poor = user_factory(credits=1)
        app.dependency_overrides[get_replicate] = lambda: None
        try:
            missing = test_client.post("/jobs/video-multi/start", json={}, headers=headers_for(poor))
            broke = test_client.post("/jobs/video-multi/start", json={"videoUrl": VIDEO}, headers=headers_for(poor))
        finally:
            app.dependency_overrides.pop(get_replicate, None)

        assert missing.status_code == 400
        assert missing.json()["error"] == "Video URL is required"
        assert broke.status_code == 402
        assert broke.json()["required"] == 10
