# /engage/models/inbox.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from engage.models.common import new_id, utc_now


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MatchType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class Message(BaseModel):
    id: str = Field(default_factory=lambda: new_id("msg"))
    store_id: str
    conversation_id: Optional[str] = None
    wamid: Optional[str] = None
    phone: str
    direction: MessageDirection
    message_type: str = "text"
    content: str = ""
    status: str = "received"
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReplySchedule(BaseModel):
    days: List[int] = Field(default_factory=lambda: list(range(7)))  # 0 = Monday
    start: str = "00:00"
    end: str = "23:59"


class AutoReplyRule(BaseModel):
    id: str = Field(default_factory=lambda: new_id("rule"))
    store_id: str
    name: str
    keywords: List[str]
    match_type: MatchType = MatchType.CONTAINS
    reply: str
    priority: int = 100
    active: bool = True
    schedule: Optional[ReplySchedule] = None
