import os
from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "editing_pipeline.settings")

celery_app = Celery("editing_pipeline")
celery_app.config_from_object("django.conf:settings", namespace="CELERY")
celery_app.autodiscover_tasks()


@celery_app.on_after_finalize.connect
def _schedule_sweeper(sender, **kwargs):
    from django.conf import settings

    # Single beat entry; the task itself refuses to overlap with a running sweep
    sender.add_periodic_task(
        settings.CELERY_SWEEP_INTERVAL_SECONDS,
        sender.signature("api.tasks.sweep_expired_artifacts"),
        name="sweep expired artifacts",
    )
