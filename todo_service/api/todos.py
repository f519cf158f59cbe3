from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from todo_service.api.dependencies import get_service_metrics
from todo_service.db.session import get_db
from todo_service.models.schemas import DeletedResponse, TodoCreate, TodoOut, TodoUpdate
from todo_service.observability.instruments import ServiceMetrics
from todo_service.observability.logging import log_handler_failure, log_not_found, log_rejected
from todo_service.services import todos as todo_store


router = APIRouter(tags=["todos"])

T = TypeVar("T")


def _run_operation(metrics: ServiceMetrics, operation: str, fn: Callable[[], T]) -> T:
    """Run a persistence call, counting it as ``operation`` or ``<operation>_error``."""

    try:
        result = fn()
    except Exception as exc:  # noqa: BLE001
        metrics.todo_operations.labels(operation=f"{operation}_error").inc()
        log_handler_failure("todo_operation_failed", exc, operation=operation)
        raise HTTPException(status_code=500, detail="Server error") from exc
    metrics.todo_operations.labels(operation=operation).inc()
    return result


@router.get("/todos", response_model=list[TodoOut])
def list_todos(
    db: Session = Depends(get_db),
    metrics: ServiceMetrics = Depends(get_service_metrics),
) -> list[TodoOut]:
    return _run_operation(metrics, "read", lambda: todo_store.list_todos(db))


@router.post("/todos", response_model=TodoOut)
def create_todo(
    payload: TodoCreate,
    db: Session = Depends(get_db),
    metrics: ServiceMetrics = Depends(get_service_metrics),
) -> TodoOut:
    text = (payload.text or "").strip()
    if not text:
        metrics.todo_operations.labels(operation="create").inc()
        log_rejected(operation="create", reason="empty_text")
        raise HTTPException(status_code=400, detail="Text is required")
    return _run_operation(metrics, "create", lambda: todo_store.create_todo(db, text))


@router.put("/todos/{todo_id}", response_model=TodoOut)
def update_todo(
    todo_id: str,
    payload: TodoUpdate,
    db: Session = Depends(get_db),
    metrics: ServiceMetrics = Depends(get_service_metrics),
) -> TodoOut:
    changes = payload.model_dump(exclude_unset=True)
    updated = _run_operation(metrics, "update", lambda: todo_store.update_todo(db, todo_id, changes))
    if updated is None:
        log_not_found(operation="update", todo_id=todo_id)
        raise HTTPException(status_code=404, detail="Todo not found")
    return updated


@router.delete("/todos/{todo_id}", response_model=DeletedResponse)
def delete_todo(
    todo_id: str,
    db: Session = Depends(get_db),
    metrics: ServiceMetrics = Depends(get_service_metrics),
) -> DeletedResponse:
    deleted = _run_operation(metrics, "delete", lambda: todo_store.delete_todo(db, todo_id))
    if not deleted:
        log_not_found(operation="delete", todo_id=todo_id)
        raise HTTPException(status_code=404, detail="Todo not found")
    return DeletedResponse(message="Todo deleted")
