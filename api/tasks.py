import logging

from celery import shared_task
from celery.signals import worker_shutdown
from django.conf import settings

from .artifacts import ArtifactStore
from .errors import PipelineError
from .models import Job
from .stages import StageSequencer

logger = logging.getLogger(__name__)


@shared_task(bind=True)
def run_stage(self, job_id: str, stage: str, params: dict | None = None):
    """
    Execute one stage call for a job. Pipeline failures are already recorded on
    the job by the sequencer; only unexpected errors propagate to Celery.
    """
    try:
        job = Job.objects.get(pk=job_id)
    except Job.DoesNotExist:
        logger.warning("job %s vanished before %s could run", job_id, stage)
        return None

    try:
        return StageSequencer().run(job, stage, params or {})
    except PipelineError:
        job.refresh_from_db()
        return job.result


@shared_task
def sweep_expired_artifacts(retention_seconds=None):
    removed = ArtifactStore().sweep_expired(retention_seconds)
    return {"skipped": removed is None, "removed": removed or []}


@worker_shutdown.connect
def purge_temp_storage(sender=None, **kwargs):
    """On worker shutdown, remove temp storage unless other jobs are mid-stage."""
    if settings.PURGE_TEMP_ON_SHUTDOWN:
        ArtifactStore().purge_if_idle()
