from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from testrun_jobs.models.schemas import (
    ResultStatus, ScheduleStatus, TestRunStatus,
)

Base = declarative_base()

# BIGSERIAL on Postgres, rowid alias on SQLite
Id = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every TIMESTAMP column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls, name):
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
    )


class TestPlan(Base):
    __tablename__ = "test_plans"

    id = Column(Id, primary_key=True, autoincrement=True)
    project_id = Column(Id, nullable=False, index=True)
    repository_id = Column(Id, nullable=False)
    title = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="draft")

    plan_cases = relationship("TestPlanCase", back_populates="test_plan", order_by="TestPlanCase.test_case_id")


class TestCase(Base):
    __tablename__ = "test_cases"

    id = Column(Id, primary_key=True, autoincrement=True)
    suite_id = Column(Id, nullable=True)
    title = Column(String(255), nullable=False)


class TestPlanCase(Base):
    __tablename__ = "test_plan_cases"

    test_plan_id = Column(Id, ForeignKey("test_plans.id", ondelete="CASCADE"), primary_key=True)
    test_case_id = Column(Id, ForeignKey("test_cases.id", ondelete="CASCADE"), primary_key=True)

    test_plan = relationship("TestPlan", back_populates="plan_cases")
    test_case = relationship("TestCase")


class TestRun(Base):
    __tablename__ = "test_runs"

    id = Column(Id, primary_key=True, autoincrement=True)
    test_plan_id = Column(Id, ForeignKey("test_plans.id"), nullable=False, index=True)
    project_id = Column(Id, nullable=False, index=True)
    repository_id = Column(Id, nullable=True)
    title = Column(String(255), nullable=False)
    status = Column(_enum(TestRunStatus, "test_run_status"), default=TestRunStatus.PENDING, nullable=False)
    environment = Column(String(100), nullable=True)
    build_version = Column(String(100), nullable=True)
    execution_date = Column(Date, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    test_plan = relationship("TestPlan")
    results = relationship("TestRunResult", back_populates="test_run", order_by="TestRunResult.id")


class TestRunResult(Base):
    __tablename__ = "test_run_results"
    __table_args__ = (
        UniqueConstraint("test_run_id", "test_case_id", name="test_run_results_run_case_key"),
    )

    id = Column(Id, primary_key=True, autoincrement=True)
    test_run_id = Column(Id, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    test_case_id = Column(Id, ForeignKey("test_cases.id", ondelete="CASCADE"), nullable=False)
    status = Column(_enum(ResultStatus, "test_run_result_status"), default=ResultStatus.TO_DO, nullable=False)
    execution_time = Column(Integer, nullable=True)  # seconds
    executed_by = Column(Id, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    test_run = relationship("TestRun", back_populates="results")
    test_case = relationship("TestCase")


class TestRunTemplate(Base):
    __tablename__ = "test_run_templates"

    id = Column(Id, primary_key=True, autoincrement=True)
    project_id = Column(Id, nullable=False, index=True)
    repository_id = Column(Id, nullable=True)
    test_plan_id = Column(Id, ForeignKey("test_plans.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    environment = Column(String(100), nullable=True)
    build_version = Column(String(100), nullable=True)
    title_pattern = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    test_plan = relationship("TestPlan")


class ScheduledTestRun(Base):
    __tablename__ = "scheduled_test_runs"

    id = Column(Id, primary_key=True, autoincrement=True)
    template_id = Column(Id, ForeignKey("test_run_templates.id"), nullable=False)
    project_id = Column(Id, nullable=False)
    name = Column(String(255), nullable=False)
    frequency = Column(String(20), nullable=False)
    status = Column(_enum(ScheduleStatus, "scheduled_test_run_status"), default=ScheduleStatus.ACTIVE, nullable=False)
    schedule = Column(Text, nullable=False)  # JSON encoded, shape depends on frequency
    next_run_at = Column(DateTime, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    last_run_id = Column(Id, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)
    max_runs = Column(Integer, nullable=True)
    end_date = Column(Date, nullable=True)

    template = relationship("TestRunTemplate")

