import uuid
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone


def claim_cutoff():
    """Claims older than this are treated as lost tasks and may be taken over."""
    return timezone.now() - timedelta(seconds=settings.STAGE_CLAIM_TIMEOUT_SECONDS)


class Job(models.Model):
    class Stage(models.TextChoices):
        CREATED = "CREATED"
        RETRIEVED = "RETRIEVED"
        AUDIO_EXTRACTED = "AUDIO_EXTRACTED"
        SEGMENTS_REMOVED = "SEGMENTS_REMOVED"
        COMPOSITED = "COMPOSITED"
        FAILED = "FAILED"

    class Status(models.TextChoices):
        PENDING = "PENDING"
        STARTED = "STARTED"
        SUCCESS = "SUCCESS"
        FAILURE = "FAILURE"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source_ref = models.CharField(max_length=1024, blank=True, default="")  # URL, sharing id, S3 key or upload:<name>
    stage = models.CharField(max_length=32, choices=Stage.choices, default=Stage.CREATED)
    failed_stage = models.CharField(max_length=32, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.SUCCESS)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100 for the stage call in flight
    error = models.TextField(blank=True, default="")
    result = models.JSONField(default=dict, blank=True)     # last stage call outcome

    # One slot per artifact role; each stage writes only its own slot
    source_artifact = models.ForeignKey(
        "Artifact", null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    audio_artifact = models.ForeignKey(
        "Artifact", null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    working_artifact = models.ForeignKey(
        "Artifact", null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )
    final_artifact = models.ForeignKey(
        "Artifact", null=True, blank=True, on_delete=models.SET_NULL, related_name="+"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def busy_filter(cls) -> Q:
        """Jobs with a stage call queued or running and a claim that is not stale."""
        return Q(status__in=[cls.Status.PENDING, cls.Status.STARTED], updated_at__gte=claim_cutoff())

    @property
    def is_busy(self) -> bool:
        if self.status not in (self.Status.PENDING, self.Status.STARTED):
            return False
        return self.updated_at is None or self.updated_at >= claim_cutoff()

    @property
    def final_ready(self) -> bool:
        return self.stage == self.Stage.COMPOSITED and self.final_artifact_id is not None


class Artifact(models.Model):
    class Kind(models.TextChoices):
        VIDEO = "video"
        AUDIO = "audio"
        SUBTITLE = "subtitle"
        MUSIC = "music"
        THUMBNAIL = "thumbnail"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    job = models.ForeignKey(Job, on_delete=models.CASCADE, related_name="artifacts")
    kind = models.CharField(max_length=16, choices=Kind.choices)
    path = models.CharField(max_length=1024, unique=True)
    size_bytes = models.BigIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.kind}:{self.path}"
