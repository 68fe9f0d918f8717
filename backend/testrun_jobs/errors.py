"""Typed failure reasons raised by job processors and the queue runtime.

``JobError`` subclasses are terminal: the worker fails the job without
scheduling a retry. Transport and store failures are not wrapped and are
retried by the runtime.

Exception args hold the raw fields, not the rendered message, so the result
backend can rebuild the same exception from ``exc_type`` and ``args``.
"""


class JobError(Exception):
    """Base class for non-retryable job failures"""

    code = "JOB_ERROR"


class NotFoundError(JobError):
    code = "NOT_FOUND"


class TestRunNotFoundError(NotFoundError):
    def __init__(self, test_run_id):
        super().__init__(test_run_id)
        self.test_run_id = test_run_id

    def __str__(self):
        return f"Test run {self.test_run_id} not found"


class ScheduledRunNotFoundError(NotFoundError):
    def __init__(self, schedule_id):
        super().__init__(schedule_id)
        self.schedule_id = schedule_id

    def __str__(self):
        return f"Scheduled run {self.schedule_id} not found"


class UnknownJobTypeError(JobError):
    code = "UNKNOWN_JOB_TYPE"

    def __init__(self, job_type):
        super().__init__(job_type)
        self.job_type = job_type

    def __str__(self):
        return f"Unknown job type: {self.job_type}"


class UnknownQueueError(JobError):
    code = "UNKNOWN_QUEUE"

    def __init__(self, queue):
        super().__init__(queue)
        self.queue = queue

    def __str__(self):
        return f"Unknown queue: {self.queue}"


class UnsupportedExportFormatError(JobError):
    code = "UNSUPPORTED_FORMAT"

    def __init__(self, export_format):
        super().__init__(export_format)
        self.export_format = export_format

    def __str__(self):
        return f"Unsupported export format: {self.export_format}"


class ScheduleInactiveError(JobError):
    code = "SCHEDULE_INACTIVE"

    def __init__(self, schedule_id, status):
        super().__init__(schedule_id, status)
        self.schedule_id = schedule_id
        self.status = status

    def __str__(self):
        return f"Scheduled run {self.schedule_id} is {self.status}, not materializing"


class InvalidJobPayloadError(JobError):
    code = "INVALID_PAYLOAD"


class ScheduleConfigError(ValueError):
    """Schedule configuration could not be decoded; recovered by the calculator"""


class RunLockTimeout(TimeoutError):
    """Another job is holding the test run lock; retried by the runtime"""

    def __init__(self, test_run_id, waited):
        super().__init__(test_run_id, waited)
        self.test_run_id = test_run_id
        self.waited = waited

    def __str__(self):
        return f"Timed out after {self.waited}s waiting for lock on test run {self.test_run_id}"
