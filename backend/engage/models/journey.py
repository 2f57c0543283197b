# /engage/models/journey.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from engage.models.common import new_id, utc_now

# A journey is a directed graph of nodes built in the visual editor. Node
# `data` keeps the editor's own (camelCase) configuration keys untouched.


class JourneyStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


class ScheduledExecutionStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JourneyNode(BaseModel):
    id: str
    type: str
    subtype: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    trigger: Optional[Dict[str, Any]] = None

    @property
    def kind(self) -> str:
        """The node's subtype, wherever the editor happened to put it."""
        value = self.subtype or self.data.get("subtype") or self.data.get("actionType") or ""
        return str(value).lower()


class JourneyEdge(BaseModel):
    id: str
    source: str
    target: str
    label: Optional[str] = None
    source_handle: Optional[str] = None


class JourneySettings(BaseModel):
    allow_reentry: bool = False
    reentry_cooldown_days: Optional[float] = None


class Journey(BaseModel):
    id: str = Field(default_factory=lambda: new_id("journey"))
    store_id: str
    name: str
    description: Optional[str] = None
    status: JourneyStatus = JourneyStatus.DRAFT
    nodes: List[JourneyNode] = Field(default_factory=list)
    edges: List[JourneyEdge] = Field(default_factory=list)
    settings: JourneySettings = Field(default_factory=JourneySettings)
    segment_id: Optional[str] = None
    test_mode: bool = False
    test_phones: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_node(self, node_id: Optional[str]) -> Optional[JourneyNode]:
        if not node_id:
            return None
        return next((node for node in self.nodes if node.id == node_id), None)

    def outgoing_edges(self, node_id: str) -> List[JourneyEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def trigger_nodes(self) -> List[JourneyNode]:
        return [node for node in self.nodes if node.type == "trigger"]

    def entry_node_id(self) -> Optional[str]:
        """First node after the trigger, or the first non-trigger node."""
        for trigger in self.trigger_nodes():
            edges = self.outgoing_edges(trigger.id)
            if edges:
                return edges[0].target
        return next((node.id for node in self.nodes if node.type != "trigger"), None)


class EnrollmentContext(BaseModel):
    trigger_event: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentMetadata(BaseModel):
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    experiments: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    whatsapp_message_id: Optional[str] = None


class JourneyEnrollment(BaseModel):
    id: str = Field(default_factory=lambda: new_id("enroll"))
    store_id: str
    journey_id: str
    customer_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_node_id: Optional[str] = None
    completed_nodes: List[str] = Field(default_factory=list)
    entered_at: datetime = Field(default_factory=utc_now)
    last_activity_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    goal_achieved: bool = False
    context: EnrollmentContext = Field(default_factory=EnrollmentContext)
    waiting_for_event: Optional[str] = None
    waiting_for_event_timeout: Optional[datetime] = None
    waiting_for_goal: bool = False
    goal_node_id: Optional[str] = None
    exit_reason: Optional[str] = None
    metadata: EnrollmentMetadata = Field(default_factory=EnrollmentMetadata)

    @property
    def is_open(self) -> bool:
        return self.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.WAITING)


class ScheduledExecution(BaseModel):
    id: str = Field(default_factory=lambda: new_id("sched"))
    store_id: str
    enrollment_id: str
    journey_id: str
    node_id: str
    resume_at: datetime
    status: ScheduledExecutionStatus = ScheduledExecutionStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
