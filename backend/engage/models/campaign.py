# /engage/models/campaign.py

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from engage.models.common import new_id, utc_now


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED = "PAUSED"


class CampaignChannel(str, Enum):
    EMAIL = "EMAIL"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"
    PUSH = "PUSH"


class CampaignLogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    DELIVERED = "DELIVERED"
    READ = "READ"
    CLICKED = "CLICKED"
    REPLIED = "REPLIED"
    CONVERTED = "CONVERTED"


class FollowUpCondition(str, Enum):
    NOT_READ = "NOT_READ"
    READ = "READ"
    NOT_CLICKED = "NOT_CLICKED"
    CLICKED = "CLICKED"
    NOT_CONVERTED = "NOT_CONVERTED"
    CONVERTED = "CONVERTED"
    NOT_REPLIED = "NOT_REPLIED"
    REPLIED = "REPLIED"
    ALWAYS = "ALWAYS"


class QueueStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FAILED = "FAILED"


# Statuses that mean "the message went out and nothing terminal happened yet".
ENGAGEABLE_LOG_STATUSES = [
    CampaignLogStatus.SUCCESS.value,
    CampaignLogStatus.DELIVERED.value,
    CampaignLogStatus.READ.value,
    CampaignLogStatus.CLICKED.value,
]


class Campaign(BaseModel):
    id: str = Field(default_factory=lambda: new_id("campaign"))
    store_id: str
    name: str
    channel: CampaignChannel = CampaignChannel.WHATSAPP
    message: str
    subject: Optional[str] = None
    segment_id: Optional[str] = None
    template_name: Optional[str] = None
    template_language: str = "en"
    status: CampaignStatus = CampaignStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    total_sent: int = 0
    total_failed: int = 0
    total_delivered: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    total_converted: int = 0
    total_revenue: float = 0.0
    created_at: datetime = Field(default_factory=utc_now)


class CampaignLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id("clog"))
    store_id: str
    campaign_id: str
    customer_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: CampaignLogStatus
    step_index: int = 0
    step_id: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    used_free_form: bool = False
    window_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None
    follow_up_sent: bool = False
    follow_up_sent_at: Optional[datetime] = None
    order_id: Optional[str] = None
    order_amount: Optional[float] = None


class CampaignFollowUp(BaseModel):
    id: str = Field(default_factory=lambda: new_id("followup"))
    store_id: str
    campaign_id: str
    step_index: int = Field(ge=1)
    condition: FollowUpCondition = FollowUpCondition.NOT_READ
    delay_minutes: int = Field(default=1440, ge=0)
    message: str
    template_name: Optional[str] = None
    template_language: str = "en"
    active: bool = True
    total_sent: int = 0
    total_free_form: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class CampaignQueueItem(BaseModel):
    id: str = Field(default_factory=lambda: new_id("queue"))
    store_id: str
    campaign_id: str
    status: QueueStatus = QueueStatus.PENDING
    scheduled_at: datetime = Field(default_factory=utc_now)
    retry_count: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
