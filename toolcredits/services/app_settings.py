from typing import Dict, Optional

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings, secret_or_none
from ..db import get_db
from ..models import AppSetting
from ..providers.render import RenderProvider, ReplicateProvider, ShotstackProvider

SHOTSTACK_TOOL_TYPES = ("shotstack", "song_mtv_video")
REPLICATE_TOOL_TYPES = ("video_multi_subtitle", "video_multi_object_removal")


def get_app_setting(db: Session, key: str, fallback: Optional[str] = None) -> Optional[str]:
    """Server-held value from app_settings, falling back to the environment."""
    value = db.execute(select(AppSetting.value).where(AppSetting.key == key)).scalar_one_or_none()
    return secret_or_none(value) or secret_or_none(fallback)


def set_app_setting(db: Session, key: str, value: str) -> AppSetting:
    row = db.execute(select(AppSetting).where(AppSetting.key == key)).scalar_one_or_none()
    if row is None:
        row = AppSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    db.commit()
    return row


def build_replicate(db: Session) -> Optional[ReplicateProvider]:
    token = get_app_setting(db, "replicate_api_token", settings.replicate_api_token)
    if not token:
        return None
    return ReplicateProvider(token, settings.replicate_base_url, timeout=settings.provider_timeout_seconds)


def build_render_providers(db: Session) -> Dict[str, RenderProvider]:
    providers: Dict[str, RenderProvider] = {}
    shotstack_key = get_app_setting(db, "shotstack_api_key", settings.shotstack_api_key)
    if shotstack_key:
        shotstack = ShotstackProvider(shotstack_key, settings.shotstack_base_url, timeout=settings.provider_timeout_seconds)
        providers.update({tool_type: shotstack for tool_type in SHOTSTACK_TOOL_TYPES})
    replicate = build_replicate(db)
    if replicate:
        providers.update({tool_type: replicate for tool_type in REPLICATE_TOOL_TYPES})
    return providers


# FastAPI dependencies, overridable in tests
def get_render_providers(db: Session = Depends(get_db)) -> Dict[str, RenderProvider]:
    return build_render_providers(db)


def get_replicate(db: Session = Depends(get_db)) -> Optional[ReplicateProvider]:
    return build_replicate(db)
