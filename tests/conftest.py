import shutil
import subprocess
from pathlib import Path

import pytest

from api.artifacts import ArtifactStore
from api.models import Job
from api.stages import StageSequencer
from api.transcode import VideoInfo


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not installed",
)


@pytest.fixture()
def temp_root(tmp_path, settings):
    """Point temp storage and the music library at per-test directories."""
    root = tmp_path / "temp"
    root.mkdir()
    music = tmp_path / "music"
    music.mkdir()
    settings.PIPELINE_TEMP_ROOT = root
    settings.MUSIC_LIBRARY_DIR = music
    settings.S3_PUBLISH_FINAL = False
    return root


@pytest.fixture()
def store(temp_root):
    return ArtifactStore(temp_root)


@pytest.fixture()
def job(db):
    return Job.objects.create(source_ref="https://example.com/clip.mp4")


class FakeInvoker:
    """Stands in for ffmpeg: records operations and writes a small output file."""

    ffprobe_bin = "ffprobe"
    probe_timeout = 5

    def __init__(self, payload=b"\x00" * 2048):
        self.payload = payload
        self.operations = []
        self.fail_with = None

    def invoke(self, operation):
        self.operations.append(operation)
        operation.build_args("ffmpeg")
        if self.fail_with is not None:
            # ffmpeg may leave a partial file behind before failing
            Path(operation.output).write_bytes(b"partial")
            raise self.fail_with
        Path(operation.output).write_bytes(self.payload)
        return Path(operation.output)


class FakeClient:
    """Retrieval client that 'downloads' by copying local fixture files."""

    def __init__(self, store, files=None):
        self.store = store
        self.files = files or {}
        self.fetched = []

    def fetch(self, ref, kind, suffix=None):
        self.fetched.append((ref, kind))
        src = self.files[ref]
        dest = self.store.new_path(kind, Path(src).suffix)
        shutil.copyfile(src, dest)
        return dest

    def retrieve(self, ref):
        return self.normalize(self.fetch(ref, "video"))

    def normalize(self, raw):
        dest = self.store.new_path("video", ".mp4")
        shutil.copyfile(raw, dest)
        Path(raw).unlink()
        return dest


@pytest.fixture()
def invoker():
    return FakeInvoker()


@pytest.fixture()
def source_file(tmp_path):
    p = tmp_path / "source.mp4"
    p.write_bytes(b"\x01" * 4096)
    return p


@pytest.fixture()
def sequencer(store, invoker, source_file, monkeypatch):
    client = FakeClient(store, {"https://example.com/clip.mp4": source_file})
    monkeypatch.setattr(
        "api.stages.probe_video",
        lambda path, inv=None: VideoInfo(width=270, height=480, fps=30.0, has_audio=True, duration_seconds=2.0),
    )
    return StageSequencer(store=store, invoker=invoker, client=client)


def make_test_video(path: Path, width=270, height=480, fps=30, seconds=2.0) -> Path:
    subprocess.run(
        [
            "ffmpeg", "-hide_banner", "-y",
            "-f", "lavfi", "-i", f"testsrc=size={width}x{height}:rate={fps}:duration={seconds}",
            "-f", "lavfi", "-i", f"sine=frequency=440:duration={seconds}",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac", "-shortest",
            str(path),
        ],
        check=True,
        capture_output=True,
    )
    return path


def ffmpeg_has_filter(name: str) -> bool:
    if shutil.which("ffmpeg") is None:
        return False
    out = subprocess.run(["ffmpeg", "-hide_banner", "-filters"], capture_output=True, text=True)
    return any(line.split()[1:2] == [name] for line in out.stdout.splitlines() if line.strip())


