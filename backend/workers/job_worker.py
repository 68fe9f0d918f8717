"""
Celery runtime for test-run background jobs.

Three queues, each consumed by its own worker pool:

- ``test-run-jobs``: bulk status updates and bulk deletes
- ``export-jobs``: report generation
- ``scheduled-run-jobs``: materializing runs from schedule templates

``JobRuntime`` owns the Celery app, the session factory and the run locks.
Producers use ``enqueue``/``job_state``; worker processes call ``start`` (or
``run_worker`` from the command line) to consume.
"""

import argparse
import logging
import socket
import threading
import time
from typing import Any, Dict, Iterable, Mapping, Optional

import redis
from celery import Celery
from celery.exceptions import SoftTimeLimitExceeded
from celery.result import AsyncResult
from celery.utils.log import get_task_logger
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.exc import InterfaceError, OperationalError

from testrun_jobs.config import Settings, settings as default_settings
from testrun_jobs.db.database_sync import create_session_factory, session_scope
from testrun_jobs.errors import InvalidJobPayloadError, UnknownJobTypeError, UnknownQueueError
from testrun_jobs.models.schemas import (
    BulkDeleteJob, BulkStatusUpdateJob, ExportJob, JobState, QueueName, ScheduledRunJob, TestRunJob,
)
from testrun_jobs.services.bulk_delete import process_bulk_delete
from testrun_jobs.services.bulk_status import process_bulk_status_update
from testrun_jobs.services.exporter import process_export
from testrun_jobs.services.run_locks import create_run_locks
from testrun_jobs.services.scheduled_run import process_scheduled_run

logger = get_task_logger(__name__)

TASK_NAMES = {
    QueueName.TEST_RUN: "test-run-jobs.process",
    QueueName.EXPORT: "export-jobs.process",
    QueueName.SCHEDULED_RUN: "scheduled-run-jobs.process",
}

TEST_RUN_JOB_TYPES = ("bulk-status-update", "bulk-delete")

# Store and transport failures worth another attempt
RETRYABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    ConnectionError,
    TimeoutError,
    OSError,
    SoftTimeLimitExceeded,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)

CELERY_STATES = {
    "PENDING": JobState.QUEUED,
    "RECEIVED": JobState.QUEUED,
    "RETRY": JobState.QUEUED,
    "STARTED": JobState.ACTIVE,
    "SUCCESS": JobState.COMPLETED,
    "FAILURE": JobState.FAILED,
    "REVOKED": JobState.FAILED,
}

_test_run_job_adapter = TypeAdapter(TestRunJob)


def resolve_queue(queue) -> QueueName:
    try:
        return QueueName(queue)
    except ValueError:
        raise UnknownQueueError(queue)


def parse_envelope(queue, envelope: Mapping[str, Any]):
    """Validate a raw envelope into the job variant for ``queue``."""
    queue = resolve_queue(queue)
    if not isinstance(envelope, Mapping):
        raise InvalidJobPayloadError(f"Job envelope must be an object, got {type(envelope).__name__}")

    try:
        if queue == QueueName.TEST_RUN:
            job_type = envelope.get("type")
            if job_type not in TEST_RUN_JOB_TYPES:
                raise UnknownJobTypeError(job_type)
            return _test_run_job_adapter.validate_python(envelope)
        if queue == QueueName.EXPORT:
            return ExportJob.model_validate(envelope)
        return ScheduledRunJob.model_validate(envelope)
    except ValidationError as e:
        raise InvalidJobPayloadError(f"Invalid {queue.value} payload: {e.errors()}") from e


def create_celery_app(settings: Settings) -> Celery:
    app = Celery(
        'testrun_jobs',
        broker=settings.redis_url,
        backend=settings.redis_url,
    )
    app.conf.update(
        task_serializer='json',
        accept_content=['json'],
        result_serializer='json',
        timezone='UTC',
        enable_utc=True,
        worker_prefetch_multiplier=1,  # A worker only reserves what it can run now
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_max_tasks_per_child=50,  # Prevent memory leaks
        task_track_started=True,
        task_soft_time_limit=settings.job_soft_timeout_seconds,
        task_time_limit=settings.job_timeout_seconds,
        result_expires=settings.result_expires_seconds,
        result_extended=True,
        task_default_queue=QueueName.TEST_RUN.value,
        task_routes={name: {'queue': queue.value} for queue, name in TASK_NAMES.items()},
    )
    return app


class QueueWorker:
    """A Celery worker consuming one queue, run on a background thread"""

    def __init__(self, celery_app: Celery, queue: QueueName, concurrency: int, pool: str, loglevel: str = "INFO"):
        self.celery_app = celery_app
        self.queue = queue
        self.concurrency = concurrency
        self.pool = pool
        self.loglevel = loglevel
        self.hostname = f"{queue.value}@{socket.gethostname()}"
        self._controller = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._controller = self.celery_app.WorkController(
            hostname=self.hostname,
            queues=[self.queue.value],
            concurrency=self.concurrency,
            pool_cls=self.pool,
            loglevel=self.loglevel,
        )
        self._thread = threading.Thread(target=self._controller.start, name=self.hostname, daemon=True)
        self._thread.start()
        logger.info("Started worker %s (concurrency=%d, pool=%s)", self.hostname, self.concurrency, self.pool)

    def active_jobs(self) -> int:
        inspector = self.celery_app.control.inspect(destination=[self.hostname], timeout=1.0)
        active = inspector.active() or {}
        return sum(len(jobs) for jobs in active.values())

    def drain(self, timeout: Optional[float] = None, poll_interval: float = 0.5) -> bool:
        """Stop taking new jobs and wait for in-flight ones. Returns True once idle."""
        if not self.running:
            return True
        self.celery_app.control.cancel_consumer(self.queue.value, destination=[self.hostname], reply=True)
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.active_jobs():
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Worker %s still busy after %.1fs drain", self.hostname, timeout)
                return False
            time.sleep(poll_interval)
        return True

    def stop(self, timeout: Optional[float] = 10.0):
        if self._controller is not None:
            self._controller.stop(in_sighandler=False)
        if self._thread is not None:
            self._thread.join(timeout)
        self._controller = None
        self._thread = None
        logger.info("Stopped worker %s", self.hostname)


class JobRuntime:
    """Queues, workers and processors for one process.

    Built once by the process's entry point and passed to whatever needs to
    enqueue or consume jobs.
    """

    def __init__(
        self,
        settings: Settings = default_settings,
        session_factory=None,
        run_locks=None,
        celery_app: Optional[Celery] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory or create_session_factory(
            settings.database_url, echo=settings.database_echo
        )
        self.run_locks = run_locks or create_run_locks(settings)
        self.celery_app = celery_app or create_celery_app(settings)
        self._redis_client = redis_client
        self.tasks = {queue: self._register_task(queue) for queue in QueueName}
        self.workers: Dict[QueueName, QueueWorker] = {}

    # Processing

    def execute(self, queue, envelope: Mapping[str, Any]) -> Dict[str, Any]:
        """Run one job synchronously and return its JSON-ready result"""
        job = parse_envelope(queue, envelope)

        if isinstance(job, BulkStatusUpdateJob):
            with self.run_locks.hold(job.data.test_run_id), session_scope(self.session_factory) as session:
                result = process_bulk_status_update(session, job.data)
        elif isinstance(job, BulkDeleteJob):
            with self.run_locks.hold(job.data.test_run_id), session_scope(self.session_factory) as session:
                result = process_bulk_delete(session, job.data)
        elif isinstance(job, ExportJob):
            with session_scope(self.session_factory) as session:
                result = process_export(session, job.format, job.data, self.settings.export_dir_absolute)
        elif isinstance(job, ScheduledRunJob):
            with session_scope(self.session_factory) as session:
                result = process_scheduled_run(session, job)
        else:
            raise UnknownJobTypeError(type(job).__name__)

        return result.model_dump(mode="json", by_alias=True)

    def retry_countdown(self, retries: int) -> float:
        """Exponential backoff: base, 2*base, 4*base..."""
        return self.settings.job_backoff_seconds * (2 ** retries)

    def _register_task(self, queue: QueueName):
        runtime = self

        def process_job(self, envelope):
            """Celery task to run a single queued job"""
            try:
                result = runtime.execute(queue, envelope)
                logger.info("%s job %s completed", queue.value, self.request.id)
                return result
            except Exception as exc:
                # Only retry on transient store/transport errors, not on bad input
                if isinstance(exc, RETRYABLE_ERRORS):
                    countdown = runtime.retry_countdown(self.request.retries)
                    logger.warning(
                        "%s job %s failed (attempt %d), retrying in %.1fs: %s",
                        queue.value, self.request.id, self.request.retries + 1, countdown, exc,
                    )
                    raise self.retry(exc=exc, countdown=countdown)
                logger.error("%s job %s failed: %s", queue.value, self.request.id, exc)
                raise

        return self.celery_app.task(
            name=TASK_NAMES[queue],
            bind=True,
            max_retries=max(self.settings.job_attempts - 1, 0),
            rate_limit=self.settings.worker_rate_limit,
            acks_late=True,
        )(process_job)

    # Producing and polling

    def enqueue(self, queue, envelope: Mapping[str, Any]) -> str:
        """Validate and queue a job, returning its id"""
        queue = resolve_queue(queue)
        job = parse_envelope(queue, envelope)
        payload = job.model_dump(mode="json", by_alias=True)
        async_result = self.tasks[queue].apply_async(args=[payload], queue=queue.value)
        logger.info("Queued %s job %s", queue.value, async_result.id)
        return async_result.id

    def job_state(self, job_id: str) -> Dict[str, Any]:
        async_result = AsyncResult(job_id, app=self.celery_app)
        state = CELERY_STATES.get(async_result.state, JobState.QUEUED)
        info: Dict[str, Any] = {"state": state, "result": None, "error": None, "error_type": None}
        if state == JobState.COMPLETED:
            info["result"] = async_result.result
        elif state == JobState.FAILED and async_result.result is not None:
            info["error"] = str(async_result.result)
            info["error_type"] = type(async_result.result).__name__
        return info

    @property
    def redis_client(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.Redis.from_url(self.settings.redis_url, socket_connect_timeout=5)
        return self._redis_client

    def queue_depths(self) -> Dict[str, int]:
        """Jobs waiting in each queue (Redis broker keeps one list per queue)"""
        return {queue.value: int(self.redis_client.llen(queue.value)) for queue in QueueName}

    # Worker lifecycle

    def start(self, queues: Optional[Iterable] = None):
        for queue in (resolve_queue(q) for q in (queues or list(QueueName))):
            worker = self.workers.get(queue)
            if worker is None:
                worker = QueueWorker(
                    self.celery_app,
                    queue,
                    concurrency=self.settings.worker_concurrency,
                    pool=self.settings.worker_pool,
                    loglevel=self.settings.log_level,
                )
                self.workers[queue] = worker
            worker.start()

    def drain(self, timeout: Optional[float] = None) -> bool:
        idle = True
        for worker in self.workers.values():
            idle = worker.drain(timeout) and idle
        return idle

    def stop(self):
        for worker in self.workers.values():
            worker.stop()
        self.workers.clear()

    def run_worker(self, queue):
        """Consume one queue in the foreground (blocking)"""
        queue = resolve_queue(queue)
        self.celery_app.worker_main(argv=[
            'worker',
            '--queues', queue.value,
            '--concurrency', str(self.settings.worker_concurrency),
            '--pool', self.settings.worker_pool,
            '--hostname', f"{queue.value}@%h",
            '--loglevel', self.settings.log_level,
        ])


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a test-run job worker")
    parser.add_argument(
        "--queue",
        choices=[queue.value for queue in QueueName],
        required=True,
        help="Queue this worker pool consumes",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=default_settings.log_level)
    runtime = JobRuntime(default_settings)
    runtime.run_worker(args.queue)


if __name__ == '__main__':
    main()
