from pathlib import Path

import allure
from sqlalchemy import inspect, text

from harness_pilot.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Task Lifecycle Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = OrchestratorRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    tables = set(inspect(repository.engine).get_table_names())
    indexes = {index["name"] for index in inspect(repository.engine).get_indexes("tasks")}
    repository.close()

    assert version == "20261018_0001"
    assert {"tasks", "task_events", "meta"} <= tables
    assert "idx_tasks_status_created" in indexes
