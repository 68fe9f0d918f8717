import csv
import io
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload, selectinload
from testrun_jobs.db.models import TestPlan, TestPlanCase, TestRun, TestRunResult
from testrun_jobs.errors import TestRunNotFoundError, UnsupportedExportFormatError
from testrun_jobs.models.schemas import ExportData, ExportFormat, ExportResult

logger = logging.getLogger(__name__)

CSV_HEADER = ["Test Case ID", "Title", "Status", "Execution Time", "Executed At", "Executed By"]

PDF_PENDING_MESSAGE = "PDF export not yet implemented"

@dataclass(frozen=True)
class ExportedCase:
    id: str
    title: str
    status: str
    execution_time: Optional[int] = None
    executed_at: Optional[str] = None
    executed_by: Optional[str] = None

@dataclass(frozen=True)
class ExportSnapshot:
    """Everything a report needs, detached from the session"""
    test_run_id: str
    title: str
    status: str
    plan_id: str
    plan_title: str
    environment: Optional[str] = None
    build_version: Optional[str] = None
    plan_case_ids: List[str] = field(default_factory=list)
    cases: List[ExportedCase] = field(default_factory=list)

def parse_format(value: str) -> ExportFormat:
    try:
        return ExportFormat(value)
    except ValueError:
        raise UnsupportedExportFormatError(value)

def load_snapshot(session: Session, test_run_id: int) -> ExportSnapshot:
    """Load the run, its plan membership and its results joined to test cases"""
    run = session.execute(
        select(TestRun)
        .where(TestRun.id == test_run_id)
        .options(
            joinedload(TestRun.test_plan).selectinload(TestPlan.plan_cases).joinedload(TestPlanCase.test_case),
            selectinload(TestRun.results).joinedload(TestRunResult.test_case),
        )
    ).unique().scalar_one_or_none()

    if run is None:
        raise TestRunNotFoundError(test_run_id)

    return ExportSnapshot(
        test_run_id=str(run.id),
        title=run.title,
        status=run.status.value,
        plan_id=str(run.test_plan.id),
        plan_title=run.test_plan.title,
        environment=run.environment,
        build_version=run.build_version,
        plan_case_ids=[str(pc.test_case_id) for pc in run.test_plan.plan_cases],
        cases=[
            ExportedCase(
                id=str(result.test_case.id),
                title=result.test_case.title,
                status=result.status.value,
                execution_time=result.execution_time,
                executed_at=result.executed_at.isoformat() if result.executed_at else None,
                executed_by=str(result.executed_by) if result.executed_by is not None else None,
            )
            for result in run.results
        ],
    )

def _cell(value) -> str:
    return "" if value is None else str(value)

def render_csv(snapshot: ExportSnapshot) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for case in snapshot.cases:
        writer.writerow([
            case.id,
            case.title,
            case.status,
            _cell(case.execution_time),
            _cell(case.executed_at),
            _cell(case.executed_by),
        ])
    return buffer.getvalue()

def render_jira(snapshot: ExportSnapshot) -> str:
    lines = [
        f"Test Run: {snapshot.title}",
        f"Test Plan: {snapshot.plan_title}",
        f"Status: {snapshot.status}",
        "",
    ]
    for case in snapshot.cases:
        lines.append(f"* {case.title} [{case.status}]")
        if case.execution_time is not None:
            lines.append(f"  Execution Time: {case.execution_time}s")
    return "\n".join(lines) + "\n"

RENDERERS = {
    ExportFormat.CSV: render_csv,
    ExportFormat.JIRA: render_jira,
}

def export_filename(test_run_id, export_format: ExportFormat, epoch_ms: Optional[int] = None) -> str:
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"test-run-{test_run_id}-{epoch_ms}.{export_format.value}"

def process_export(
    session: Session,
    export_format: str,
    data: ExportData,
    export_dir: Path,
) -> ExportResult:
    """Generate a report file for a test run.

    The format is checked before anything is loaded. PDF is accepted but not
    rendered: the result comes back with ``pending`` set and no file.
    """
    fmt = parse_format(export_format)
    snapshot = load_snapshot(session, data.test_run_id)
    filename = export_filename(snapshot.test_run_id, fmt)

    if fmt == ExportFormat.PDF:
        return ExportResult(
            filepath=None,
            filename=filename,
            format=fmt,
            pending=True,
            message=PDF_PENDING_MESSAGE,
        )

    export_dir = Path(export_dir)
    export_dir.mkdir(parents=True, exist_ok=True)
    filepath = export_dir / filename
    filepath.write_text(RENDERERS[fmt](snapshot), encoding="utf-8")

    logger.info(
        "Exported test run %s as %s (%d result(s)) to %s",
        snapshot.test_run_id, fmt.value, len(snapshot.cases), filepath,
    )
    return ExportResult(filepath=str(filepath), filename=filename, format=fmt)
