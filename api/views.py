import logging
import os
import shutil
from pathlib import Path
from uuid import uuid4

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import FileResponse, Http404
from django.utils import timezone
from kombu.exceptions import OperationalError
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import stages
from .artifacts import ArtifactStore
from .errors import EnqueueError, PreconditionError
from .models import Job
from .tasks import run_stage
from .utils import save_uploaded_file, guess_kind

from .serializers import (
    CompositeSerializer,
    JobCreateSerializer,
    JobSerializer,
    PresignRequestSerializer,
    PresignResponseSerializer,
    RemoveSegmentsSerializer,
    RetrieveSerializer,
    ThumbnailIntroSerializer,
)

from .s3 import create_presigned_put, create_presigned_get

logger = logging.getLogger(__name__)


def _get_job(job_id) -> Job:
    try:
        return Job.objects.get(pk=job_id)
    except (Job.DoesNotExist, ValueError, DjangoValidationError):
        raise Http404("Job not found")


def _claim(job: Job) -> None:
    """
    Atomically mark the job PENDING; a job runs one stage call at a time. A claim
    older than STAGE_CLAIM_TIMEOUT_SECONDS belongs to a lost task and is taken over.
    """
    claimed = (
        Job.objects.filter(pk=job.pk)
        .exclude(Job.busy_filter())
        .update(status=Job.Status.PENDING, progress=0, updated_at=timezone.now())
    )
    if not claimed:
        raise PreconditionError("another stage is already running for this job")


def _enqueue(job: Job, stage: str, params: dict) -> None:
    """Hand the stage call to Celery; a failed hand-off gives the claim back."""
    try:
        run_stage.delay(str(job.id), stage, params)
    except OperationalError as exc:
        logger.error("could not enqueue %s for job %s: %s", stage, job.id, exc)
        err = EnqueueError(f"task queue unavailable: {exc}")
        Job.objects.filter(pk=job.pk).update(
            status=Job.Status.FAILURE,
            progress=0,
            error=str(err),
            result={"success": False, "stage": stage, "error": err.as_dict()},
            updated_at=timezone.now(),
        )
        raise err from exc


def _accepted(job: Job, stage: str) -> Response:
    return Response({"job_id": str(job.id), "stage": stage}, status=status.HTTP_202_ACCEPTED)


class HealthView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        return Response({
            "status": "OK",
            "ffmpeg": shutil.which(settings.FFMPEG_BIN) is not None,
            "ffprobe": shutil.which(settings.FFPROBE_BIN) is not None,
        })


class PresignUploadView(views.APIView):
    """
    Returns a presigned PUT URL + recommended key so the client can upload a
    source video directly to MinIO/S3; the key is then used as a job source.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = PresignRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        filename = ser.validated_data["filename"]
        content_type = ser.validated_data.get("content_type") or None

        if guess_kind(filename) not in ("video", "other"):
            return Response({"detail": "Only video uploads are accepted."}, status=400)

        key = f"uploads/{uuid4().hex}_{os.path.basename(filename)}"
        signed = create_presigned_put(key, content_type=content_type)
        resp = {"key": key, "url": signed["url"], "headers": signed.get("headers", {})}
        return Response(PresignResponseSerializer(resp).data, status=201)


class JobCreateView(views.APIView):
    """
    Creates a job from a remote source reference (URL, sharing id, object key)
    or a multipart upload, and enqueues retrieval.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = JobCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        upload = ser.validated_data.get("file")
        if upload is not None:
            if guess_kind(upload.name) not in ("video", "other"):
                return Response({"detail": "Only video uploads are accepted."}, status=400)
            saved = save_uploaded_file(upload)
            job = Job.objects.create(source_ref=f"upload:{os.path.basename(upload.name)}", status=Job.Status.PENDING)
            params = {"upload_path": str(saved)}
        else:
            job = Job.objects.create(source_ref=ser.validated_data["source"], status=Job.Status.PENDING)
            params = {"source_ref": job.source_ref}

        try:
            _enqueue(job, stages.RETRIEVE, params)
        except EnqueueError:
            if "upload_path" in params:
                ArtifactStore().discard(params["upload_path"])
            raise
        return _accepted(job, stages.RETRIEVE)


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        job = _get_job(job_id)
        data = JobSerializer(job).data
        key = (job.result or {}).get("s3_key")
        if job.final_ready and key:
            data["final_url"] = create_presigned_get(key)  # time-limited download URL
        return Response(data)

    def delete(self, request, job_id):
        job = _get_job(job_id)
        if job.is_busy:
            raise PreconditionError("cannot delete a job while a stage is running")
        released = ArtifactStore().release_job(job)
        job.delete()
        return Response({"job_id": str(job_id), "released": released})


class StageView(views.APIView):
    """Validate a stage request, check the slot it consumes, then enqueue it."""
    permission_classes = [AllowAny]
    authentication_classes = []

    stage = None
    serializer_class = None
    requires = None  # job slot the stage reads

    def params(self, data) -> dict:
        return {}

    def post(self, request, job_id):
        job = _get_job(job_id)
        params = {}
        if self.serializer_class is not None:
            ser = self.serializer_class(data=request.data)
            ser.is_valid(raise_exception=True)
            params = self.params(ser.validated_data)
        if self.requires and getattr(job, self.requires) is None:
            raise PreconditionError(f"job has no {self.requires.replace('_', ' ')}")
        _claim(job)
        _enqueue(job, self.stage, params)
        return _accepted(job, self.stage)


class RetrieveView(StageView):
    stage = stages.RETRIEVE
    serializer_class = RetrieveSerializer

    def params(self, data):
        return {"source_ref": data.get("source")}


class ExtractAudioView(StageView):
    stage = stages.EXTRACT_AUDIO
    requires = "source_artifact"


class RemoveSegmentsView(StageView):
    stage = stages.REMOVE_SEGMENTS
    serializer_class = RemoveSegmentsSerializer
    requires = "source_artifact"

    def params(self, data):
        return data["edit"].to_params()


class CompositeView(StageView):
    stage = stages.COMPOSITE
    serializer_class = CompositeSerializer
    requires = "working_artifact"

    def params(self, data):
        return {
            "subtitle_text": data["subtitle_text"],
            "music": data.get("music") or None,
            "thumbnail": data.get("thumbnail") or None,
            "thumbnail_duration": data.get("thumbnail_duration"),
        }


class ThumbnailIntroView(StageView):
    stage = stages.THUMBNAIL_INTRO
    serializer_class = ThumbnailIntroSerializer
    requires = "working_artifact"

    def params(self, data):
        return {"thumbnail": data["thumbnail"], "duration": data["duration"]}


class AudioDownloadView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        job = _get_job(job_id)
        if job.audio_artifact is None or not Path(job.audio_artifact.path).is_file():
            raise Http404("Audio file not found")
        return FileResponse(open(job.audio_artifact.path, "rb"), content_type="audio/wav",
                            as_attachment=True, filename=f"{job.id}.wav")


class FinalDownloadView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        job = _get_job(job_id)
        if not job.final_ready:
            raise PreconditionError("final video is not ready")
        path = Path(job.final_artifact.path)
        if not path.is_file():
            raise Http404("Final video not found")
        return FileResponse(open(path, "rb"), content_type="video/mp4",
                            as_attachment=True, filename=f"{job.id}.mp4")


class CleanupView(views.APIView):
    """
    Releases one job's artifacts when a job_id is given, then sweeps every
    temp file older than the retention window.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        store = ArtifactStore()
        released = 0
        job_id = request.data.get("job_id")
        if job_id:
            job = _get_job(job_id)
            if job.is_busy:
                raise PreconditionError("cannot clean up a job while a stage is running")
            released = store.release_job(job)
            job.stage = stages.settled_stage(job)
            job.save(update_fields=["stage", "updated_at"])
        removed = store.sweep_expired()
        return Response({
            "success": True,
            "released": released,
            "swept": len(removed or []),
            "sweep_skipped": removed is None,
        })
