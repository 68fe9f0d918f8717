"""Pytest fixtures shared by the job processor and runtime tests.

Every test gets a fresh in-memory SQLite database and small helpers to seed
plans, cases, runs and schedules.
"""

import json
from typing import Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from testrun_jobs.config import Settings
from testrun_jobs.db import models
from testrun_jobs.db.database_sync import init_db
from testrun_jobs.models.schemas import ResultStatus, ScheduleStatus
from testrun_jobs.services.run_locks import LocalRunLocks
from workers.job_worker import JobRuntime, create_celery_app


def _sqlite_engine(url: str, **kwargs):
    engine = create_engine(url, connect_args={"check_same_thread": False}, **kwargs)

    # Enable foreign key constraints for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@pytest.fixture
def session_factory() -> Generator[sessionmaker, None, None]:
    """Session factory over an in-memory database kept alive by StaticPool"""
    engine = _sqlite_engine("sqlite:///:memory:", poolclass=StaticPool)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    init_db(factory)
    yield factory
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed database for tests that use several connections at once"""
    engine = _sqlite_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    init_db(factory)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        redis_url="redis://localhost:6379/15",
        export_dir=str(tmp_path / "exports"),
        run_lock_backend="local",
        run_lock_blocking_timeout_seconds=5,
        job_attempts=3,
        job_backoff_seconds=2.0,
    )


@pytest.fixture
def runtime(test_settings, session_factory) -> JobRuntime:
    """Runtime whose Celery app executes tasks in-process"""
    celery_app = create_celery_app(test_settings)
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=False)
    return JobRuntime(
        test_settings,
        session_factory=session_factory,
        run_locks=LocalRunLocks(blocking_timeout=5),
        celery_app=celery_app,
        redis_client=MagicMock(),
    )


class Seeder:
    """Builds the rows a job needs; every helper commits"""

    def __init__(self, session: Session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def plan(self, title="Regression", case_titles=("Login", "Logout", "Checkout")):
        plan = self._save(models.TestPlan(project_id=1, repository_id=10, title=title))
        cases = []
        for case_title in case_titles:
            case = self._save(models.TestCase(suite_id=100, title=case_title))
            self._save(models.TestPlanCase(test_plan_id=plan.id, test_case_id=case.id))
            cases.append(case)
        return plan, cases

    def run(self, plan, cases, title="Nightly", **result_fields):
        run = self._save(models.TestRun(
            test_plan_id=plan.id,
            project_id=plan.project_id,
            repository_id=plan.repository_id,
            title=title,
        ))
        for case in cases:
            self.session.add(models.TestRunResult(
                test_run_id=run.id,
                test_case_id=case.id,
                status=result_fields.get("status", ResultStatus.TO_DO),
                executed_at=result_fields.get("executed_at"),
                completed_at=result_fields.get("completed_at"),
                execution_time=result_fields.get("execution_time"),
            ))
        self.session.commit()
        return run

    def schedule(self, plan, frequency="daily", schedule=None, title_pattern=None, **fields):
        template = self._save(models.TestRunTemplate(
            project_id=plan.project_id,
            repository_id=plan.repository_id,
            test_plan_id=plan.id,
            name="Nightly template",
            environment="staging",
            build_version="2.4.1",
            title_pattern=title_pattern,
            is_active=fields.pop("template_active", True),
        ))
        if schedule is None:
            schedule = {"hour": 9, "minute": 0}
        return self._save(models.ScheduledTestRun(
            template_id=template.id,
            project_id=plan.project_id,
            name="Nightly",
            frequency=frequency,
            status=fields.pop("status", ScheduleStatus.ACTIVE),
            schedule=schedule if isinstance(schedule, str) else json.dumps(schedule),
            **fields,
        ))


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)
