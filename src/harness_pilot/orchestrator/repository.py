"""Persistent task lifecycle store and meta key-value store."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from harness_pilot.orchestrator.models import (
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskNotFoundError,
    TaskStatus,
    TaskTransitionError,
    TaskView,
)
from harness_pilot.storage.alembic_runner import upgrade_head
from harness_pilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from harness_pilot.storage.sqlmodel_models import MetaEntry, TaskEventRow, TaskRow

logger = logging.getLogger(__name__)


def new_task_id() -> str:
    return f"tsk_{uuid4().hex[:10]}"


class OrchestratorRepository:
    """Task and meta persistence facade backed by SQLModel + SQLite.

    Every mutating call commits before it returns, so the last known state
    survives a crash between operations.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Record a new task in PENDING status."""

        now = utc_now()
        task_id = payload.task_id or new_task_id()
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                status=TaskStatus.PENDING.value,
                agent=payload.agent,
                prompt=payload.prompt,
                args_json=json.dumps(list(payload.args), ensure_ascii=False),
                output=None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"agent": payload.agent},
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        logger.info("Task created: %s (agent=%s)", task_id, payload.agent)
        return view

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        output: str | None = None,
    ) -> TaskView:
        """Advance a task's status; terminal statuses are final."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous.is_terminal or status.rank < previous.rank:
                raise TaskTransitionError(task_id, previous, status)

            values: dict[str, object] = {
                "status": status.value,
                "updated_at": to_db_datetime(now),
            }
            if output is not None:
                values["output"] = output
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self._get_task_row(session=session, task_id=task_id)
                raise TaskTransitionError(task_id, TaskStatus(current.status), status)

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_changed",
                status_from=previous,
                status_to=status,
                details={"output_chars": len(output)} if output is not None else {},
            )
            session.commit()
            updated = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one()
            view = _to_task_view(updated)
        logger.info("Task %s updated to %s", task_id, status.value)
        return view

    def reassign_agent(self, task_id: str, agent: str, *, reason: str) -> TaskView:
        """Move a non-terminal task to another harness during the fallback walk."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            status = TaskStatus(row.status)
            if status.is_terminal:
                raise TaskTransitionError(task_id, status, status)
            previous_agent = row.agent
            row.agent = agent
            row.updated_at = to_db_datetime(now)
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="agent_reassigned",
                status_from=status,
                status_to=status,
                details={"from": previous_agent, "to": agent, "reason": reason},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_recent(self, limit: int = 10) -> list[TaskView]:
        """List most recently created tasks first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .order_by(
                    col(TaskRow.created_at).desc(),
                    literal_column("tasks.rowid").desc(),
                )
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_by_status(self, status: TaskStatus) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(select(TaskRow).where(TaskRow.status == status.value)).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            task_view = _to_task_view(task)

            events: list[TaskEventView] = []
            for row in event_rows:
                details = {}
                if row.details_json:
                    parsed = json.loads(row.details_json)
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    TaskEventView(
                        event_id=row.id or 0,
                        task_id=row.task_id,
                        event_type=row.event_type,
                        status_from=(
                            TaskStatus(row.status_from) if row.status_from is not None else None
                        ),
                        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                        created_at=to_utc_aware_datetime(row.created_at),
                        details=details,
                    ),
                )

        return TaskDetails(task=task_view, events=events)

    def get_meta(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(select(MetaEntry).where(MetaEntry.key == key)).one_or_none()
            return row.value if row is not None else None

    def set_meta(self, key: str, value: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(MetaEntry).where(MetaEntry.key == key)).one_or_none()
            if row is None:
                row = MetaEntry(key=key, value=value, updated_at=to_db_datetime(now))
            else:
                row.value = value
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def _get_task_row(self, *, session: Session, task_id: str) -> TaskRow:
        row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: TaskRow) -> TaskView:
    args = json.loads(row.args_json) if row.args_json else []
    return TaskView(
        task_id=row.task_id,
        status=TaskStatus(row.status),
        agent=row.agent,
        prompt=row.prompt,
        args=tuple(str(arg) for arg in args),
        output=row.output,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
