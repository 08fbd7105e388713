import logging

from celery import Celery
from celery.schedules import crontab
from sqlmodel import Session

from . import assembly, db, recovery
from .config import ASSEMBLY_MAX_ATTEMPTS, REDIS_URL, WORKER_QUEUE

logger = logging.getLogger(__name__)

cel = Celery("signing", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "process-expired": {"task": "process_expired", "schedule": crontab(minute="*/15")},
    "retry-stuck-assemblies": {"task": "retry_stuck_assemblies", "schedule": crontab(minute="*/10")},
}


@cel.task(name="assemble_request", queue=WORKER_QUEUE, bind=True, max_retries=ASSEMBLY_MAX_ATTEMPTS - 1)
def assemble_request(self, request_id: int):
    # one attempt per run; the backoff between attempts is a Celery countdown
    with Session(db.engine) as session:
        outcome = assembly.attempt_assembly(session, request_id)
        if outcome.outcome != assembly.AttemptOutcomeKind.FAILURE or not outcome.retryable:
            return {"outcome": outcome.outcome, "artifact_ref": outcome.artifact_ref, "error": outcome.error}
        failed = self.request.retries + 1
        if failed >= ASSEMBLY_MAX_ATTEMPTS:
            assembly.mark_exhausted(session, request_id, failed, outcome.error)
            return {"outcome": outcome.outcome, "artifact_ref": None, "error": outcome.error}
    delay = assembly.backoff_delay(failed)
    logger.warning("Assembly of request %s failed, retrying in %.1fs", request_id, delay)
    raise self.retry(countdown=delay)


@cel.task(name="process_expired", queue=WORKER_QUEUE)
def process_expired():
    with Session(db.engine) as session:
        return recovery.process_expired(session).to_dict()


@cel.task(name="retry_stuck_assemblies", queue=WORKER_QUEUE)
def retry_stuck_assemblies():
    with Session(db.engine) as session:
        return recovery.retry_stuck_assemblies(session).to_dict()
