"""Persistence of tasks and their per-program statuses."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from .database import NotFoundError, session_scope
from .models import Query, ServiceError, Task
from .records import TaskProgStatusRecord, TaskRecord


class TaskStore:
    """Reads and writes tasks."""

    def create_task(self, task: Task) -> Task:
        """Store task with its program statuses and return it as stored.

        The id given by the database is also written back to task.
        """
        try:
            with session_scope() as session:
                record = TaskRecord(
                    name=task.name,
                    status=int(task.status),
                    step=int(task.step),
                    description=task.description,
                    component_id=task.component_id,
                    component_name=task.component_name,
                    error=task.error,
                )
                if task.id:
                    record.id = task.id
                if task.created_at is not None:
                    record.created_time = task.created_at
                session.add(record)
                session.flush()
                task.id = record.id

                for program in task.prog_status:
                    status_record = TaskProgStatusRecord(
                        task_id=record.id,
                        component_id=program.component_id,
                        component_name=program.component_name,
                        program_id=program.program_id,
                        program_name=program.program_name,
                        status=int(program.status),
                        error=program.error,
                    )
                    if program.created_at is not None:
                        status_record.created_time = program.created_at
                    session.add(status_record)
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc
        return self.get_task(task.id)

    def get_task(self, task_id: int) -> Task:
        try:
            with session_scope() as session:
                record = session.get(
                    TaskRecord, task_id, options=[selectinload(TaskRecord.prog_statuses)]
                )
                if record is None:
                    raise NotFoundError("record not found")
                return record.to_task()
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc

    def list_tasks(self, query: Optional[Query] = None) -> tuple[int, list[Task]]:
        """Return the number of tasks and the requested page, newest first."""
        try:
            with session_scope() as session:
                total = session.scalar(select(func.count()).select_from(TaskRecord))
                stmt = (
                    select(TaskRecord)
                    .options(selectinload(TaskRecord.prog_statuses))
                    .order_by(TaskRecord.id.desc())
                )
                if query is not None and query.page_size > 0:
                    offset = max((query.page_num - 1) * query.page_size, 0)
                    stmt = stmt.limit(query.page_size).offset(offset)
                tasks = [r.to_task() for r in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc
        return int(total or 0), tasks

    def update_task(self, task: Task) -> None:
        """Write status, step, error and update time of task and its programs."""
        try:
            with session_scope() as session:
                record = session.get(TaskRecord, task.id)
                if record is None:
                    raise NotFoundError("record not found")
                record.status = int(task.status)
                record.step = int(task.step)
                record.error = task.error
                record.last_update_time = task.updated_at or datetime.now()

                for program in task.prog_status:
                    existing = session.scalars(
                        select(TaskProgStatusRecord).where(
                            TaskProgStatusRecord.task_id == task.id,
                            TaskProgStatusRecord.program_id == program.program_id,
                        )
                    ).first()
                    if existing is None:
                        raise NotFoundError("record not found")
                    existing.status = int(program.status)
                    existing.error = program.error
                    existing.last_update_time = program.updated_at or datetime.now()
        except SQLAlchemyError as exc:
            raise ServiceError(str(exc)) from exc

    def delete_task(self, task: Optional[Task]) -> None:
        """Tasks are kept; deleting one has no effect."""
        return None