# /engage/models/api.py

from pydantic import BaseModel, Field
from typing import Any, List, Dict, Optional
from datetime import datetime, timezone

from engage.models.campaign import CampaignChannel, FollowUpCondition
from engage.models.journey import JourneyEdge, JourneyNode, JourneySettings, JourneyStatus
from engage.models.segment import SegmentGroup

# Request and response bodies for the REST API.


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LoginRequest(BaseModel):
    password: str = Field(..., min_length=8, max_length=255)
    store_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=_now)
    version: str


# --- Journeys ---

class JourneyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    nodes: List[JourneyNode]
    edges: List[JourneyEdge] = []
    settings: JourneySettings = Field(default_factory=JourneySettings)
    segment_id: Optional[str] = None
    test_mode: bool = False
    test_phones: List[str] = []


class JourneyStatusRequest(BaseModel):
    status: JourneyStatus


class ManualEnrollRequest(BaseModel):
    customer_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


# --- Campaigns ---

class CampaignCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    channel: CampaignChannel = CampaignChannel.WHATSAPP
    message: str = Field(..., min_length=1, max_length=4096)
    subject: Optional[str] = None
    segment_id: Optional[str] = None
    template_name: Optional[str] = None
    template_language: str = "en"


class ScheduleCampaignRequest(BaseModel):
    scheduled_at: Optional[datetime] = None


class FollowUpCreateRequest(BaseModel):
    step_index: int = Field(..., ge=1)
    condition: FollowUpCondition = FollowUpCondition.NOT_READ
    delay_minutes: int = Field(default=1440, ge=0)
    message: str = Field(..., min_length=1, max_length=4096)
    template_name: Optional[str] = None
    template_language: str = "en"


class FollowUpEstimate(BaseModel):
    condition: FollowUpCondition
    use_smart_window: bool = True


class CostEstimateRequest(BaseModel):
    audience_size: Optional[int] = Field(default=None, ge=0)
    in_window_count: Optional[int] = Field(default=None, ge=0)
    follow_ups: List[FollowUpEstimate] = []
    use_smart_window: bool = True


# --- Segments ---

class SegmentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    condition_groups: List[SegmentGroup] = []


class SegmentPreviewRequest(BaseModel):
    condition_groups: List[SegmentGroup] = []


# --- Inbox ---

class ReplyRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)


class AutoReplyRuleRequest(BaseModel):
    name: str
    keywords: List[str] = Field(..., min_length=1)
    match_type: str = Field(default="contains", pattern="^(exact|contains|regex)$")
    reply: str = Field(..., min_length=1, max_length=4096)
    priority: int = 100
    active: bool = True
    schedule: Optional[Dict[str, Any]] = None
