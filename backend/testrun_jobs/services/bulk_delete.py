import logging
from sqlalchemy import delete
from sqlalchemy.orm import Session
from testrun_jobs.db.models import TestRunResult
from testrun_jobs.models.schemas import BulkDeleteData, BulkDeleteResult

logger = logging.getLogger(__name__)

def process_bulk_delete(session: Session, data: BulkDeleteData) -> BulkDeleteResult:
    """Delete the listed results, but only those belonging to the given run"""
    if not data.result_ids:
        return BulkDeleteResult(deleted=0)

    outcome = session.execute(
        delete(TestRunResult)
        .where(
            TestRunResult.id.in_(data.result_ids),
            TestRunResult.test_run_id == data.test_run_id,
        )
        .execution_options(synchronize_session=False)
    )
    deleted = outcome.rowcount or 0

    if deleted < len(set(data.result_ids)):
        logger.info(
            "Bulk delete on test run %s removed %d of %d requested result(s)",
            data.test_run_id, deleted, len(set(data.result_ids)),
        )
    return BulkDeleteResult(deleted=deleted)
