from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from todo_service.db.models import Todo
from todo_service.models.schemas import TodoOut


logger = logging.getLogger(__name__)


def _to_out(todo: Todo) -> TodoOut:
    return TodoOut(
        id=str(todo.id),
        text=todo.text,
        completed=todo.completed,
        created_at=todo.created_at,
    )


def _parse_id(todo_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(todo_id)
    except ValueError:
        return None


def _find(db: Session, todo_id: str) -> Todo | None:
    todo_uuid = _parse_id(todo_id)
    if todo_uuid is None:
        return None
    return db.execute(select(Todo).where(Todo.id == todo_uuid)).scalar_one_or_none()


def list_todos(db: Session) -> list[TodoOut]:
    rows = db.execute(select(Todo).order_by(Todo.created_at.desc())).scalars().all()
    return [_to_out(row) for row in rows]


def create_todo(db: Session, text: str) -> TodoOut:
    todo = Todo(text=text)
    db.add(todo)
    db.commit()
    db.refresh(todo)
    logger.debug("todo.created", extra={"todo_id": str(todo.id)})
    return _to_out(todo)


def update_todo(db: Session, todo_id: str, changes: dict) -> TodoOut | None:
    todo = _find(db, todo_id)
    if todo is None:
        return None
    for key in ("text", "completed"):
        if key in changes and changes[key] is not None:
            setattr(todo, key, changes[key])
    db.add(todo)
    db.commit()
    db.refresh(todo)
    return _to_out(todo)


def delete_todo(db: Session, todo_id: str) -> bool:
    todo = _find(db, todo_id)
    if todo is None:
        return False
    db.delete(todo)
    db.commit()
    return True
