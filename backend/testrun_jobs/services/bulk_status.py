import logging
import math
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from testrun_jobs.db.models import TestRunResult, utcnow
from testrun_jobs.models.schemas import (
    BulkStatusUpdateData, BulkStatusUpdateResult, ResultStatus, TERMINAL_RESULT_STATUSES,
)

logger = logging.getLogger(__name__)

def apply_status_transition(
    result: TestRunResult,
    status: ResultStatus,
    executed_by: Optional[int],
    now: datetime,
) -> None:
    """Move one result to ``status``, keeping its timing fields consistent.

    - executed_at is stamped on the first move into inProgress only
    - passed/failed/blocked stamp completed_at and, when the result was
      started, execution_time in whole seconds
    - skipped clears completed_at and execution_time
    """
    result.status = status
    result.executed_by = executed_by

    if status == ResultStatus.IN_PROGRESS and result.executed_at is None:
        result.executed_at = now

    if status in TERMINAL_RESULT_STATUSES:
        result.completed_at = now
        if result.executed_at is not None:
            result.execution_time = math.floor((now - result.executed_at).total_seconds())

    if status == ResultStatus.SKIPPED:
        result.execution_time = None
        result.completed_at = None

def process_bulk_status_update(
    session: Session,
    data: BulkStatusUpdateData,
    now: Optional[datetime] = None,
) -> BulkStatusUpdateResult:
    """Set the status of every result in the run whose test case is listed.

    Unknown runs and test cases simply match nothing. The caller owns the
    transaction, so a store failure leaves every row untouched.
    """
    now = now or utcnow()
    if not data.test_case_ids:
        return BulkStatusUpdateResult(updated=0)

    results = session.execute(
        select(TestRunResult).where(
            TestRunResult.test_run_id == data.test_run_id,
            TestRunResult.test_case_id.in_(data.test_case_ids),
        )
    ).scalars().all()

    for result in results:
        apply_status_transition(result, data.status, data.executed_by, now)

    session.flush()
    logger.info(
        "Bulk status update on test run %s: %d result(s) set to %s",
        data.test_run_id, len(results), data.status.value,
    )
    return BulkStatusUpdateResult(updated=len(results))
