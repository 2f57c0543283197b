# /engage/models/segment.py

from datetime import datetime
from typing import Any, List, Literal, Optional
from pydantic import BaseModel, Field

from engage.models.common import new_id, utc_now


class SegmentCondition(BaseModel):
    field: str
    operator: str
    value: Any = None


class SegmentGroup(BaseModel):
    group_operator: Literal["AND", "OR"] = "AND"
    conditions: List[SegmentCondition] = Field(default_factory=list)


class Segment(BaseModel):
    id: str = Field(default_factory=lambda: new_id("segment"))
    store_id: str
    name: str
    condition_groups: List[SegmentGroup] = Field(default_factory=list)
    customer_count: int = 0
    needs_update: bool = True
    last_evaluated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def targets_everyone(self) -> bool:
        return self.name.strip().lower() == "all" or not self.condition_groups
