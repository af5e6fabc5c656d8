"""
Job stage sequencing.

Every stage takes the Job explicitly; the Job's artifact slots are the only
state carried between stages. A failed stage deletes what it produced, marks
the job FAILED and leaves earlier slots alone.
"""
from __future__ import annotations

import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings
from PIL import Image

from .artifacts import ArtifactStore
from .errors import PipelineError, PreconditionError, ValidationError
from .models import Artifact, Job
from .retrieval import RetrievalClient, is_remote_url
from .s3 import upload_file
from .transcode import InputSpec, TranscodeInvoker, TranscodeOperation, probe_video

logger = logging.getLogger(__name__)

RETRIEVE = "retrieve"
EXTRACT_AUDIO = "extract_audio"
REMOVE_SEGMENTS = "remove_segments"
COMPOSITE = "composite"
THUMBNAIL_INTRO = "thumbnail_intro"

PRIMARY_VOLUME = 0.8
MUSIC_VOLUME = 0.3
MAX_THUMBNAIL_SECONDS = 10.0

SUBTITLE_STYLE = (
    "FontName=Arial,FontSize=24,PrimaryColour=&H00FFFFFF,OutlineColour=&H00000000,"
    "BorderStyle=1,Outline=2,Shadow=0,Alignment=2,MarginV=40"
)

VIDEO_ENCODE = ["-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-pix_fmt", "yuv420p"]
AUDIO_ENCODE = ["-c:a", "aac", "-b:a", "128k"]

_IDENTITY_FILTERS = {None, "", "null", "anull"}


@dataclass
class SegmentEdit:
    """How segments are cut from the source. ``copy`` means no filtering at all."""

    copy: bool = False
    filter_graph: Optional[str] = None
    output_pads: dict = field(default_factory=dict)
    video_filter: Optional[str] = None
    audio_filter: Optional[str] = None

    @classmethod
    def from_params(cls, data: dict) -> "SegmentEdit":
        if "filter_graph" in data:
            graph = data["filter_graph"]
            if graph is None:
                return cls(copy=True)
            if not isinstance(graph, str) or not graph.strip():
                raise ValidationError("filter_graph is empty; send null to keep the video as-is")
            pads = data.get("output_pads") or {}
            if not isinstance(pads, dict) or not pads:
                raise ValidationError("filter_graph requires output_pads, e.g. {\"video\": \"outv\", \"audio\": \"outa\"}")
            edit = cls(filter_graph=graph, output_pads={str(k): str(v) for k, v in pads.items()})
            edit.operation(Path("in"), Path("out")).validate()
            return edit

        if "video_filter" in data or "audio_filter" in data:
            vf, af = data.get("video_filter"), data.get("audio_filter")
            for name, value in (("video_filter", vf), ("audio_filter", af)):
                if value is not None and (not isinstance(value, str) or not value.strip()):
                    raise ValidationError(f"{name} must be a filter expression, 'null' or null")
            if vf in _IDENTITY_FILTERS and af in _IDENTITY_FILTERS:
                return cls(copy=True)
            return cls(
                video_filter=None if vf in _IDENTITY_FILTERS else vf,
                audio_filter=None if af in _IDENTITY_FILTERS else af,
            )

        raise ValidationError("send filter_graph (null to copy) or video_filter/audio_filter")

    def to_params(self) -> dict:
        if self.copy:
            return {"filter_graph": None}
        if self.filter_graph is not None:
            return {"filter_graph": self.filter_graph, "output_pads": dict(self.output_pads)}
        return {"video_filter": self.video_filter or "null", "audio_filter": self.audio_filter or "anull"}

    def operation(self, source: Path, output: Path) -> TranscodeOperation:
        return TranscodeOperation(
            inputs=[InputSpec(source)],
            output=output,
            video_filter=self.video_filter,
            audio_filter=self.audio_filter,
            filter_graph=self.filter_graph,
            output_pads=dict(self.output_pads),
            output_options=[*VIDEO_ENCODE, *AUDIO_ENCODE, "-threads", "1"],
        )


def escape_filter_path(p) -> str:
    s = str(p).replace("\\", "/")
    m = re.match(r"^([A-Za-z]):/(.*)$", s)
    if m:
        s = f"{m.group(1)}\\:/{m.group(2)}"
    return s.replace("'", "\\'")


def settled_stage(job: Job) -> str:
    """Furthest stage the job's current slots support."""
    if job.final_artifact_id:
        return Job.Stage.COMPOSITED
    if job.working_artifact_id:
        return Job.Stage.SEGMENTS_REMOVED
    if job.audio_artifact_id:
        return Job.Stage.AUDIO_EXTRACTED
    if job.source_artifact_id:
        return Job.Stage.RETRIEVED
    return Job.Stage.CREATED


def _update(job: Job, *, status=None, progress=None):
    fields = ["updated_at"]
    if status:
        job.status = status
        fields.append("status")
    if progress is not None:
        job.progress = max(0, min(100, int(progress)))
        fields.append("progress")
    job.save(update_fields=fields)


class StageRun:
    """Per-call scratch state: what to delete on failure, and what is always transient."""

    def __init__(self, store: ArtifactStore, job: Job):
        self.store = store
        self.job = job
        self.outputs: list[Path] = []
        self.registered: list[Artifact] = []
        self.auxiliary: list[Artifact] = []

    def output_path(self, kind: str, suffix: str) -> Path:
        p = self.store.new_path(kind, suffix)
        self.outputs.append(p)
        return p

    def track(self, path: Path) -> Path:
        self.outputs.append(Path(path))
        return Path(path)

    def register(self, kind: str, path) -> Artifact:
        artifact = self.store.register(self.job, kind, path)
        self.registered.append(artifact)
        return artifact

    def auxiliary_artifact(self, kind: str, path) -> Artifact:
        """Inputs fetched or written for this call only; released when the call ends."""
        self.track(path)
        artifact = self.store.register(self.job, kind, path)
        self.auxiliary.append(artifact)
        return artifact

    def assign(self, slot: str, artifact: Artifact | None) -> None:
        self.store.replace_slot(self.job, slot, artifact)
        if artifact is not None:
            self.registered = [a for a in self.registered if a.pk != artifact.pk]
            self.outputs = [p for p in self.outputs if str(p) != artifact.path]

    def rollback(self) -> None:
        for artifact in self.registered:
            self.store.release(artifact)
        for p in self.outputs:
            self.store.discard(p)

    def finish(self) -> None:
        for artifact in self.auxiliary:
            self.store.release(artifact)
        # Intermediates nobody claimed (e.g. an intro feeding the composite pass)
        for artifact in self.registered:
            self.store.release(artifact)
        for p in self.outputs:
            self.store.discard(p)


class StageSequencer:
    def __init__(self, store: ArtifactStore | None = None, invoker: TranscodeInvoker | None = None,
                 client: RetrievalClient | None = None):
        self.store = store or ArtifactStore()
        self.invoker = invoker or TranscodeInvoker()
        self.client = client or RetrievalClient(store=self.store, invoker=self.invoker)

    # ---------- dispatch ----------

    def run(self, job: Job, stage: str, params: dict | None = None) -> dict:
        """Run one stage call against ``job``; returns the result payload or raises PipelineError."""
        handlers = {
            RETRIEVE: self._retrieve,
            EXTRACT_AUDIO: self._extract_audio,
            REMOVE_SEGMENTS: self._remove_segments,
            COMPOSITE: self._composite,
            THUMBNAIL_INTRO: self._thumbnail_intro,
        }
        handler = handlers.get(stage)
        if handler is None:
            raise ValidationError(f"Unsupported stage: {stage}")

        params = params or {}
        run = StageRun(self.store, job)
        started = time.monotonic()
        _update(job, status=Job.Status.STARTED, progress=5)
        logger.info("job %s: %s started", job.id, stage)
        try:
            result = handler(job, run, **params)
        except Exception as exc:
            run.rollback()
            self._fail(job, stage, exc, time.monotonic() - started)
            raise
        finally:
            run.finish()

        result.update(success=True, stage=stage, elapsed_seconds=round(time.monotonic() - started, 3))
        job.result = result
        job.status = Job.Status.SUCCESS
        job.progress = 100
        job.error = ""
        job.failed_stage = ""
        job.save(update_fields=["result", "status", "progress", "error", "failed_stage", "stage", "updated_at"])
        logger.info("job %s: %s finished in %.1fs, stage=%s", job.id, stage, result["elapsed_seconds"], job.stage)
        return result

    def _fail(self, job: Job, stage: str, exc: Exception, elapsed: float) -> None:
        if isinstance(exc, PipelineError):
            error = exc.as_dict()
            logger.warning("job %s: %s failed: %s", job.id, stage, exc)
        else:
            error = {"error": "internal_error", "detail": str(exc)}
            logger.exception("job %s: %s crashed", job.id, stage)
        job.refresh_from_db(fields=["source_artifact", "audio_artifact", "working_artifact", "final_artifact"])
        job.stage = Job.Stage.FAILED
        job.failed_stage = stage
        job.status = Job.Status.FAILURE
        job.progress = 100
        job.error = str(exc)[:4000]
        job.result = {"success": False, "stage": stage, "error": error, "elapsed_seconds": round(elapsed, 3)}
        job.save(update_fields=["stage", "failed_stage", "status", "progress", "error", "result", "updated_at"])

    # ---------- public stage calls ----------

    def retrieve_source(self, job: Job, source_ref: str | None = None, upload_path: str | None = None) -> dict:
        return self.run(job, RETRIEVE, {"source_ref": source_ref, "upload_path": upload_path})

    def extract_audio(self, job: Job) -> dict:
        return self.run(job, EXTRACT_AUDIO)

    def remove_segments(self, job: Job, edit: SegmentEdit) -> dict:
        return self.run(job, REMOVE_SEGMENTS, edit.to_params())

    def composite(self, job: Job, subtitle_text: str, music: str | None = None,
                  thumbnail: str | None = None, thumbnail_duration: float | None = None) -> dict:
        return self.run(job, COMPOSITE, {
            "subtitle_text": subtitle_text,
            "music": music,
            "thumbnail": thumbnail,
            "thumbnail_duration": thumbnail_duration,
        })

    def add_thumbnail_intro(self, job: Job, thumbnail: str, duration: float) -> dict:
        return self.run(job, THUMBNAIL_INTRO, {"thumbnail": thumbnail, "duration": duration})

    # ---------- helpers ----------

    def _require(self, job: Job, slot: str) -> Path:
        """Path of the artifact in ``slot``, re-checked on disk."""
        artifact = getattr(job, slot)
        if artifact is None:
            raise PreconditionError(f"job has no {slot.replace('_', ' ')}")
        path = Path(artifact.path)
        if not path.is_file() or path.stat().st_size == 0:
            raise PreconditionError(f"{slot.replace('_', ' ')} is no longer on disk")
        return path

    @staticmethod
    def _describe(artifact: Artifact) -> dict:
        return {"artifact_id": str(artifact.id), "output": artifact.path, "size_bytes": artifact.size_bytes}

    # ---------- stages ----------

    def _retrieve(self, job: Job, run: StageRun, source_ref=None, upload_path=None) -> dict:
        if upload_path:
            raw = run.track(Path(upload_path))
            if not raw.is_file() or raw.stat().st_size == 0:
                raise ValidationError("uploaded file is empty")
            local = run.track(self.client.normalize(raw))
            ref = job.source_ref
        else:
            ref = (source_ref or job.source_ref or "").strip()
            if not ref:
                raise ValidationError("a source reference or uploaded file is required")
            local = run.track(self.client.retrieve(ref))
        _update(job, progress=80)

        artifact = run.register(Artifact.Kind.VIDEO, local)
        run.assign("source_artifact", artifact)
        # Everything downstream was derived from the previous source
        for slot in ("audio_artifact", "working_artifact", "final_artifact"):
            self.store.replace_slot(job, slot, None)
        job.source_ref = ref
        job.stage = Job.Stage.RETRIEVED
        job.save(update_fields=["source_ref", "stage", "updated_at"])
        return self._describe(artifact)

    def _extract_audio(self, job: Job, run: StageRun) -> dict:
        source = self._require(job, "source_artifact")
        out = run.output_path(Artifact.Kind.AUDIO, ".wav")
        self.invoker.invoke(TranscodeOperation(
            inputs=[InputSpec(source)],
            output=out,
            output_options=["-vn", "-acodec", "pcm_s16le", "-ar", "16000", "-ac", "1"],
        ))
        artifact = run.register(Artifact.Kind.AUDIO, out)
        run.assign("audio_artifact", artifact)
        job.stage = settled_stage(job)
        return {**self._describe(artifact), "sample_rate": 16000, "channels": 1}

    def _remove_segments(self, job: Job, run: StageRun, **params) -> dict:
        edit = SegmentEdit.from_params(params)
        source = self._require(job, "source_artifact")
        out = run.output_path(Artifact.Kind.VIDEO, ".mp4")
        if edit.copy:
            shutil.copyfile(source, out)
        else:
            self.invoker.invoke(edit.operation(source, out))
        artifact = run.register(Artifact.Kind.VIDEO, out)
        run.assign("working_artifact", artifact)
        # A final built from the previous cut no longer matches
        run.assign("final_artifact", None)
        job.stage = Job.Stage.SEGMENTS_REMOVED
        return {
            **self._describe(artifact),
            "copied": edit.copy,
            "original_size_bytes": source.stat().st_size,
        }

    def _composite(self, job: Job, run: StageRun, subtitle_text=None, music=None,
                   thumbnail=None, thumbnail_duration=None) -> dict:
        if not subtitle_text or not str(subtitle_text).strip():
            raise ValidationError("subtitle_text is required")
        video = self._require(job, "working_artifact")

        if thumbnail:
            intro = self._compose_intro(run, video, thumbnail, thumbnail_duration)
            video = Path(run.register(Artifact.Kind.VIDEO, intro).path)
            _update(job, progress=40)

        subtitles = run.output_path(Artifact.Kind.SUBTITLE, ".srt")
        subtitles.write_text(str(subtitle_text), encoding="utf-8")
        run.auxiliary_artifact(Artifact.Kind.SUBTITLE, subtitles)

        music_path = self._resolve_music(run, music) if music else None
        info = probe_video(video, self.invoker)
        has_audio = info.has_audio or not info.probed

        chains = [
            f"[0:v]subtitles=filename='{escape_filter_path(subtitles)}':force_style='{SUBTITLE_STYLE}'[outv]"
        ]
        pads = {"video": "outv"}
        extra = []
        if music_path and has_audio:
            chains += [
                f"[0:a]volume={PRIMARY_VOLUME}[a0]",
                f"[1:a]volume={MUSIC_VOLUME}[a1]",
                "[a0][a1]amix=inputs=2:duration=first:dropout_transition=2[outa]",
            ]
            pads["audio"] = "outa"
        elif music_path:
            chains.append(f"[1:a]volume={MUSIC_VOLUME}[outa]")
            pads["audio"] = "outa"
            extra = ["-shortest"]
        elif has_audio:
            chains.append("[0:a]anull[outa]")
            pads["audio"] = "outa"

        inputs = [InputSpec(video)]
        if music_path:
            inputs.append(InputSpec(music_path))
        out = run.output_path(Artifact.Kind.VIDEO, ".mp4")
        _update(job, progress=60)
        self.invoker.invoke(TranscodeOperation(
            inputs=inputs,
            output=out,
            filter_graph=";".join(chains),
            output_pads=pads,
            output_options=[*VIDEO_ENCODE, *AUDIO_ENCODE, *extra, "-movflags", "+faststart"],
        ))

        artifact = run.register(Artifact.Kind.VIDEO, out)
        run.assign("final_artifact", artifact)
        job.stage = Job.Stage.COMPOSITED
        result = {
            **self._describe(artifact),
            "has_music": music_path is not None,
            "has_subtitles": True,
            "has_thumbnail": bool(thumbnail),
        }
        result.update(self._publish(job, artifact))
        return result

    def _thumbnail_intro(self, job: Job, run: StageRun, thumbnail=None, duration=None) -> dict:
        if not thumbnail:
            raise ValidationError("thumbnail is required")
        video = self._require(job, "working_artifact")
        info = probe_video(video, self.invoker)
        out = self._compose_intro(run, video, thumbnail, duration, info=info)
        artifact = run.register(Artifact.Kind.VIDEO, out)
        run.assign("final_artifact", artifact)
        job.stage = Job.Stage.COMPOSITED
        result = {
            **self._describe(artifact),
            "width": info.width,
            "height": info.height,
            "fps": info.fps,
            "has_thumbnail": True,
        }
        result.update(self._publish(job, artifact))
        return result

    def _compose_intro(self, run: StageRun, video: Path, thumbnail: str, duration, info=None) -> Path:
        """Prepend a still held for ``duration`` seconds, matched to the video's size and rate."""
        try:
            duration = float(duration)
        except (TypeError, ValueError):
            raise ValidationError("thumbnail duration must be a number of seconds")
        if not 0 < duration <= MAX_THUMBNAIL_SECONDS:
            raise ValidationError(f"thumbnail duration must be within (0, {MAX_THUMBNAIL_SECONDS:g}] seconds")

        raw = self.client.fetch(thumbnail, kind=Artifact.Kind.THUMBNAIL)
        run.auxiliary_artifact(Artifact.Kind.THUMBNAIL, raw)
        still = run.output_path(Artifact.Kind.THUMBNAIL, ".png")
        prepare_still(raw, still)
        run.auxiliary_artifact(Artifact.Kind.THUMBNAIL, still)

        info = info or probe_video(video, self.invoker)
        w, h, fps = info.width, info.height, info.rate_arg
        has_audio = info.has_audio or not info.probed
        chains = [
            f"[0:v]scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black,setsar=1,fps={fps},format=yuv420p[intro]",
            f"[1:v]scale={w}:{h},setsar=1,fps={fps},format=yuv420p[main]",
            "[intro][main]concat=n=2:v=1:a=0[outv]",
        ]
        pads = {"video": "outv"}
        if has_audio:
            chains.append(f"[1:a]adelay=delays={int(round(duration * 1000))}:all=1[outa]")
            pads["audio"] = "outa"

        out = run.output_path(Artifact.Kind.VIDEO, ".mp4")
        self.invoker.invoke(TranscodeOperation(
            inputs=[
                InputSpec(still, ("-loop", "1", "-framerate", fps, "-t", f"{duration:g}")),
                InputSpec(video),
            ],
            output=out,
            filter_graph=";".join(chains),
            output_pads=pads,
            output_options=[*VIDEO_ENCODE, "-r", fps, *AUDIO_ENCODE, "-movflags", "+faststart"],
        ))
        return out

    def _resolve_music(self, run: StageRun, music: str) -> Path:
        """Download a music URL/object key, or look a track name up in the music library."""
        music = music.strip()
        if is_remote_url(music) or "/" in music:
            path = self.client.fetch(music, kind=Artifact.Kind.MUSIC)
            run.auxiliary_artifact(Artifact.Kind.MUSIC, path)
            return path
        library = Path(settings.MUSIC_LIBRARY_DIR)
        candidate = library / Path(music).name
        if not candidate.is_file():
            raise ValidationError(f"unknown music track: {music}")
        return candidate

    def _publish(self, job: Job, artifact: Artifact) -> dict:
        if not settings.S3_PUBLISH_FINAL:
            return {}
        key = f"outputs/{job.id}/final.mp4"
        try:
            upload_file(artifact.path, key, content_type="video/mp4")
        except (BotoCoreError, ClientError) as exc:
            logger.warning("job %s: publishing final video failed: %s", job.id, exc)
            return {"publish_error": str(exc)}
        return {"s3_key": key}


def prepare_still(src: Path, dest: Path) -> Path:
    """Re-save any readable image as an RGB PNG ffmpeg can loop."""
    try:
        with Image.open(src) as img:
            img.load()
            img.convert("RGB").save(dest, format="PNG")
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValidationError(f"thumbnail is not a readable image: {exc}") from exc
    return dest
