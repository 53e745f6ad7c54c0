"""Execution status endpoints.

The engine runs in its own process; these routes only read what it persisted
(state rows and the event log) and record stop requests it polls between
steps.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from fastapi import APIRouter, HTTPException, Query, Request

from ....core.logging_utils import log_event
from ....core.models import ExecutionState, StepStatus
from ....core.store import ExecutionStore, StoreError
from ..schemas import (
    EventItem,
    EventListResponse,
    ExecutionListResponse,
    ExecutionSummary,
    StopResponse,
)

_logger = logging.getLogger(__name__)

_MAX_EVENTS = 1000


@contextmanager
def _open_store(request: Request) -> Iterator[ExecutionStore]:
    db_path: Path = request.app.state.db_path
    try:
        with ExecutionStore(db_path) as store:
            yield store
    except StoreError as exc:
        log_event(_logger, logging.ERROR, "web.store.failed", db_path=db_path, exc=exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _require_plan(store: ExecutionStore, execution_id: int) -> None:
    if store.get_plan(execution_id) is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")


def build_execution_routes() -> APIRouter:
    router = APIRouter(prefix="/api", tags=["executions"])

    @router.get("/executions", response_model=ExecutionListResponse)
    def list_executions(request: Request):
        summaries = []
        with _open_store(request) as store:
            for plan in store.list_plans():
                steps = store.get_steps(plan.id)
                current = next(
                    (step.step_number for step in steps if not step.status.is_terminal()),
                    None,
                )
                summaries.append(
                    ExecutionSummary(
                        **plan.model_dump(),
                        total_steps=len(steps),
                        completed_steps=sum(
                            1 for step in steps if step.status == StepStatus.COMPLETED
                        ),
                        failed_steps=sum(
                            1 for step in steps if step.status == StepStatus.FAILED
                        ),
                        current_step=current,
                        stop_requested=store.stop_requested(plan.id),
                    )
                )
        return ExecutionListResponse(executions=summaries)

    @router.get("/executions/{execution_id}", response_model=ExecutionState)
    def get_execution(execution_id: int, request: Request):
        with _open_store(request) as store:
            _require_plan(store, execution_id)
            return store.get_execution_state(execution_id)

    @router.get("/executions/{execution_id}/events", response_model=EventListResponse)
    def list_events(
        execution_id: int,
        request: Request,
        since: int = Query(0, ge=0),
        limit: int = Query(500, ge=1, le=_MAX_EVENTS),
    ):
        with _open_store(request) as store:
            _require_plan(store, execution_id)
            events = [
                EventItem(**event)
                for event in store.list_events(execution_id, since_seq=since, limit=limit)
            ]
        last_seq = events[-1].seq if events else since
        return EventListResponse(events=events, last_seq=last_seq)

    @router.post("/executions/{execution_id}/stop", response_model=StopResponse)
    def request_stop(execution_id: int, request: Request):
        with _open_store(request) as store:
            _require_plan(store, execution_id)
            store.request_stop(execution_id)
        log_event(_logger, logging.INFO, "web.stop.requested", execution_id=execution_id)
        return StopResponse(id=execution_id, stop_requested=True)

    return router


__all__ = ["build_execution_routes"]
