"""
Materialize a test run from a scheduled run record and its template.

One call creates the run, seeds one ``toDo`` result per test case in the
template's plan and advances the record's bookkeeping (last run, count, next
trigger). All of it happens in the caller's transaction, so a failure at any
step leaves neither a run nor a partially seeded result set behind.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.orm import Session, joinedload, selectinload

from testrun_jobs.db.models import (
    ScheduledTestRun, TestPlan, TestRun, TestRunResult, TestRunTemplate, utcnow,
)
from testrun_jobs.errors import ScheduledRunNotFoundError, ScheduleInactiveError
from testrun_jobs.models.schemas import (
    ResultStatus, ScheduledRunData, ScheduledRunResult, ScheduleStatus, TestRunStatus,
)
from testrun_jobs.services.recurrence import next_trigger

logger = logging.getLogger(__name__)

DEFAULT_TITLE_PATTERN = "Test Run - {date}"


def render_title(pattern: Optional[str], now: datetime) -> str:
    """Fill ``{date}`` and ``{timestamp}`` in a template's title pattern."""
    pattern = pattern or DEFAULT_TITLE_PATTERN
    return (
        pattern
        .replace("{date}", now.date().isoformat())
        .replace("{timestamp}", now.isoformat())
    )


def _load_schedule(session: Session, schedule_id: int) -> ScheduledTestRun:
    scheduled = session.execute(
        select(ScheduledTestRun)
        .where(ScheduledTestRun.id == schedule_id)
        .options(
            joinedload(ScheduledTestRun.template)
            .joinedload(TestRunTemplate.test_plan)
            .selectinload(TestPlan.plan_cases)
        )
        .with_for_update(of=ScheduledTestRun)
    ).unique().scalar_one_or_none()
    if scheduled is None:
        raise ScheduledRunNotFoundError(schedule_id)
    return scheduled


def _to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def process_scheduled_run(
    session: Session,
    data: ScheduledRunData,
    now: Optional[datetime] = None,
) -> ScheduledRunResult:
    now = now or utcnow()
    scheduled = _load_schedule(session, data.schedule_id)
    template = scheduled.template

    if scheduled.status != ScheduleStatus.ACTIVE:
        raise ScheduleInactiveError(scheduled.id, scheduled.status.value)
    if not template.is_active:
        raise ScheduleInactiveError(scheduled.id, "using an inactive template")
    if data.template_id is not None and data.template_id != scheduled.template_id:
        logger.warning(
            "Scheduled run %s was enqueued with template %s but points at template %s; using %s",
            scheduled.id, data.template_id, scheduled.template_id, scheduled.template_id,
        )

    test_run = TestRun(
        test_plan_id=template.test_plan_id,
        project_id=data.project_id if data.project_id is not None else template.project_id,
        repository_id=template.repository_id,
        title=render_title(template.title_pattern, now),
        status=TestRunStatus.PENDING,
        environment=template.environment,
        build_version=template.build_version,
        execution_date=now.date(),
    )
    session.add(test_run)
    session.flush()

    test_case_ids = [pc.test_case_id for pc in template.test_plan.plan_cases]
    if test_case_ids:
        session.execute(
            insert(TestRunResult),
            [
                {
                    "test_run_id": test_run.id,
                    "test_case_id": test_case_id,
                    "status": ResultStatus.TO_DO,
                }
                for test_case_id in test_case_ids
            ],
        )

    trigger = next_trigger(scheduled.frequency, scheduled.schedule, now)
    if trigger.fallback:
        logger.warning(
            "Scheduled run %s has an unusable %s schedule (%s); next run set to %s",
            scheduled.id, scheduled.frequency, trigger.reason, trigger.at,
        )

    scheduled.last_run_at = now
    scheduled.last_run_id = test_run.id
    scheduled.run_count = (scheduled.run_count or 0) + 1
    scheduled.next_run_at = _to_naive_utc(trigger.at)

    if scheduled.max_runs is not None and scheduled.run_count >= scheduled.max_runs:
        scheduled.status = ScheduleStatus.COMPLETED
    elif scheduled.end_date is not None and scheduled.next_run_at.date() > scheduled.end_date:
        scheduled.status = ScheduleStatus.COMPLETED

    session.flush()
    logger.info(
        "Scheduled run %s created test run %s with %d result(s); run #%d, next at %s",
        scheduled.id, test_run.id, len(test_case_ids), scheduled.run_count, scheduled.next_run_at,
    )
    return ScheduledRunResult(test_run_id=str(test_run.id), next_run_at=scheduled.next_run_at)
