"""
On-disk artifact bookkeeping for pipeline jobs.

Every file a stage produces lives flat under PIPELINE_TEMP_ROOT with a
uuid-prefixed name; two jobs never share a path.
"""
import fcntl
import logging
import os
import shutil
import threading
import time
from pathlib import Path
from uuid import uuid4

from django.conf import settings

from .errors import TranscodeError
from .models import Artifact, Job

logger = logging.getLogger(__name__)

SLOTS = ("source_artifact", "audio_artifact", "working_artifact", "final_artifact")

_sweep_lock = threading.Lock()


class SweepLock:
    """
    Non-blocking single-sweeper lock: a thread lock for this process plus an
    flock on ``<root>/.locks/sweep.lock`` for every other process sharing the root.
    ``acquired`` is False when someone else holds it.
    """

    def __init__(self, root: Path):
        self.path = Path(root) / ".locks" / "sweep.lock"
        self.acquired = False
        self._fd = None

    def __enter__(self):
        if not _sweep_lock.acquire(blocking=False):
            return self
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        except OSError:
            _sweep_lock.release()
            raise
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            _sweep_lock.release()
            return self
        self._fd = fd
        self.acquired = True
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.acquired:
            return False
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            self.acquired = False
            _sweep_lock.release()
        return False


class ArtifactStore:
    def __init__(self, root=None):
        self.root = Path(root or settings.PIPELINE_TEMP_ROOT)

    def ensure_root(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def new_path(self, kind: str, suffix: str) -> Path:
        """Reserve a collision-resistant path; nothing is created on disk."""
        self.ensure_root()
        return self.root / f"{uuid4().hex}_{kind}{suffix}"

    def register(self, job: Job, kind: str, path) -> Artifact:
        """Record a produced file. The file must exist and be non-empty."""
        path = Path(path)
        if not path.is_file() or path.stat().st_size == 0:
            raise TranscodeError(f"output not produced: {path.name}")
        artifact = Artifact.objects.create(
            job=job,
            kind=kind,
            path=str(path),
            size_bytes=path.stat().st_size,
        )
        logger.debug("registered %s for job %s (%d bytes)", path.name, job.id, artifact.size_bytes)
        return artifact

    def release(self, artifact: Artifact | None) -> None:
        """Delete the file and its record. Missing files are not an error."""
        if artifact is None:
            return
        self.discard(artifact.path)
        if artifact.pk is not None:
            Artifact.objects.filter(pk=artifact.pk).delete()

    def discard(self, path) -> None:
        if not path:
            return
        Path(path).unlink(missing_ok=True)

    def replace_slot(self, job: Job, slot: str, artifact: Artifact | None) -> None:
        """Point ``slot`` at ``artifact`` and release whatever it held before."""
        old = getattr(job, slot)
        setattr(job, slot, artifact)
        job.save(update_fields=[slot, "updated_at"])
        if old is not None and (artifact is None or old.pk != artifact.pk):
            self.release(old)

    def release_job(self, job: Job) -> int:
        """Release every artifact owned by ``job``; returns how many were removed."""
        artifacts = list(job.artifacts.all())
        for slot in SLOTS:
            setattr(job, slot, None)
        job.save(update_fields=[*SLOTS, "updated_at"])
        for artifact in artifacts:
            self.release(artifact)
        logger.info("released %d artifacts of job %s", len(artifacts), job.id)
        return len(artifacts)

    def sweep_expired(self, retention_seconds: float | None = None) -> list[str] | None:
        """
        Delete every file under the temp root older than the retention window,
        whichever job it belongs to. Returns the removed file names, or None when
        another sweep (in any process sharing the root) is already running.
        """
        if retention_seconds is None:
            retention_seconds = settings.ARTIFACT_RETENTION_SECONDS
        with SweepLock(self.root) as lock:
            if not lock.acquired:
                logger.info("sweep already running; skipped")
                return None
            cutoff = time.time() - retention_seconds
            removed = []
            for p in self.root.iterdir():
                if not p.is_file():
                    continue
                try:
                    if p.stat().st_mtime < cutoff:
                        p.unlink(missing_ok=True)
                        removed.append(p.name)
                except FileNotFoundError:
                    # Released by a stage between listing and stat
                    continue
            if removed:
                Artifact.objects.filter(path__in=[str(self.root / n) for n in removed]).delete()
                logger.info("swept %d expired artifacts", len(removed))
            return removed

    def purge(self) -> None:
        """Remove the whole temp root."""
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
            logger.info("purged temp storage %s", self.root)

    def purge_if_idle(self) -> bool:
        """
        Purge at worker shutdown, unless some job is still mid-stage (its files
        belong to another worker sharing the root). Returns whether it purged.
        """
        busy = Job.objects.filter(Job.busy_filter()).count()
        if busy:
            logger.warning("temp storage %s kept: %d jobs still running", self.root, busy)
            return False
        self.purge()
        return True
