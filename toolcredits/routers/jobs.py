from typing import Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Caller, get_caller, get_current_user
from ..db import get_db
from ..models import User
from ..providers.render import RenderProvider, ReplicateProvider
from ..schemas import JobOut, VideoMultiStartRequest
from ..services.app_settings import get_render_providers, get_replicate
from ..services.jobs import JobPoller, get_job_for, start_video_multi

router = APIRouter()

@router.post('/video-multi/start')
async def video_multi_start(
    payload: VideoMultiStartRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    replicate: Optional[ReplicateProvider] = Depends(get_replicate),
):
    return await start_video_multi(
        db,
        user,
        payload.videoUrl,
        auto_subtitles=payload.autoSubtitles,
        subtitle_language=payload.subtitleLanguage,
        credit_cost=payload.creditCost,
        replicate=replicate,
    )

@router.post('/check-status')
async def check_status(
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
    providers: Dict[str, RenderProvider] = Depends(get_render_providers),
):
    """Sweep active jobs. Users sweep their own; admins and the scheduler sweep all."""
    result = await JobPoller(db, providers).sweep(caller)
    if result["total"] == 0:
        return {"message": "No pending jobs", **result}
    return result

@router.get('/{job_id}', response_model=JobOut)
def get_job(job_id: UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return get_job_for(db, Caller(user=user), job_id)
