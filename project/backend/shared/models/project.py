"""
Project, scene, story and generated media models.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from shared.models.common import new_id, utc_now

MediaStatus = Literal["pending", "processing", "completed", "failed"]
MediaType = Literal["image", "video", "audio", "render_manifest"]


class Project(BaseModel):
    """A user's video project."""

    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    idea: str
    status: str = "draft"
    progress_percent: int = Field(default=0, ge=0, le=100)
    template_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    output_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Story(BaseModel):
    """The written story a project's scenes are cut from."""

    id: str = Field(default_factory=new_id)
    project_id: str
    title: str
    synopsis: Optional[str] = None
    body: str
    created_at: datetime = Field(default_factory=utc_now)


class Scene(BaseModel):
    """One scene of a project. Status is the last stage it passed."""

    id: str = Field(default_factory=new_id)
    project_id: str
    index: int = Field(ge=0)
    status: str = "pending"
    narration: Optional[str] = None
    image_prompt: Optional[str] = None
    motion_prompt: Optional[str] = None
    duration_seconds: Optional[float] = None
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class GeneratedMedia(BaseModel):
    """A provider output persisted to storage."""

    id: str = Field(default_factory=new_id)
    user_id: str
    project_id: Optional[str] = None
    scene_id: Optional[str] = None
    media_type: MediaType
    status: MediaStatus = "pending"
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None
    url: Optional[str] = None
    storage_key: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    generation_time_ms: Optional[int] = None
    credits_used: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
