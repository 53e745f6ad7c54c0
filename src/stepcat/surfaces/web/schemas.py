"""
Pydantic response schemas for the execution API.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ResponseModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ExecutionSummary(ResponseModel):
    id: int
    plan_file_path: str
    work_dir: str
    owner: str
    repo: str
    created_at: str
    total_steps: int
    completed_steps: int
    failed_steps: int
    current_step: Optional[int] = None
    stop_requested: bool = False


class ExecutionListResponse(ResponseModel):
    executions: List[ExecutionSummary] = Field(default_factory=list)


class EventItem(ResponseModel):
    seq: int
    type: str
    timestamp: str
    data: Dict[str, Any] = Field(default_factory=dict)


class EventListResponse(ResponseModel):
    events: List[EventItem] = Field(default_factory=list)
    last_seq: int


class StopResponse(ResponseModel):
    id: int
    stop_requested: bool
