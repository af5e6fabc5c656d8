"""
ffmpeg / ffprobe invocation.

Commands are always built as argument vectors; filter text, subtitle paths and
durations never pass through a shell.
"""
from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Optional, Sequence

from django.conf import settings

from .errors import TranscodeError, TranscodeTimeout, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_FPS = 30.0
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080

DIAGNOSTIC_TAIL = 8000

_PAD_RE = re.compile(r"\[([A-Za-z0-9_]+)\]")


@dataclass(frozen=True)
class InputSpec:
    path: Path
    options: tuple[str, ...] = ()


@dataclass
class TranscodeOperation:
    inputs: list[InputSpec]
    output: Path
    output_options: list[str] = field(default_factory=list)
    video_filter: Optional[str] = None
    audio_filter: Optional[str] = None
    filter_graph: Optional[str] = None
    # {"video": "outv", "audio": "outa"}; required whenever filter_graph is set
    output_pads: dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    def validate(self) -> None:
        if not self.inputs:
            raise ValidationError("transcode operation has no inputs")
        if self.filter_graph is None:
            return
        if self.video_filter or self.audio_filter:
            raise ValidationError("use either simple filters or a filter graph, not both")
        if not self.filter_graph.strip():
            raise ValidationError("filter graph is empty")
        if not self.output_pads:
            raise ValidationError("filter graph requires explicit output pad mappings")
        unknown = set(self.output_pads) - {"video", "audio"}
        if unknown:
            raise ValidationError(f"unknown output pad streams: {sorted(unknown)}")
        produced = produced_pads(self.filter_graph)
        missing = [pad for pad in self.output_pads.values() if pad not in produced]
        if missing:
            raise ValidationError(f"filter graph does not produce mapped pads: {missing}")

    def build_args(self, ffmpeg_bin: str) -> list[str]:
        self.validate()
        cmd = [ffmpeg_bin, "-hide_banner", "-nostdin", "-y"]
        for spec in self.inputs:
            cmd += [*spec.options, "-i", str(spec.path)]
        if self.filter_graph is not None:
            cmd += ["-filter_complex", self.filter_graph]
            for stream in ("video", "audio"):
                pad = self.output_pads.get(stream)
                if pad:
                    cmd += ["-map", f"[{pad}]"]
        else:
            if self.video_filter:
                cmd += ["-vf", self.video_filter]
            if self.audio_filter:
                cmd += ["-af", self.audio_filter]
        cmd += [str(part) for part in self.output_options]
        cmd.append(str(self.output))
        return cmd


def produced_pads(graph: str) -> set[str]:
    """
    Labels that appear as outputs of some filter chain in ``graph``.

    A label is an output when it trails a chain (``...[x];`` or end of graph);
    labels that open a chain are inputs.
    """
    produced = set()
    for chain in graph.split(";"):
        chain = chain.strip()
        trailing = re.search(r"((?:\[[A-Za-z0-9_]+\])+)\s*$", chain)
        if trailing and trailing.start() > 0:
            produced.update(_PAD_RE.findall(trailing.group(1)))
    return produced


def run_process(cmd: Sequence[str], timeout: Optional[float]) -> tuple[int, str]:
    """
    Run ``cmd`` in its own process, collecting stderr. On timeout the process is
    killed and reaped before TranscodeTimeout is raised.
    """
    logger.debug("exec: %s", cmd)
    try:
        proc = subprocess.Popen(
            [str(part) for part in cmd],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise TranscodeError(f"could not start {cmd[0]}: {exc}", exit_code=None, diagnostic=str(exc)) from exc
    try:
        _, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        _, stderr = proc.communicate()
        diagnostic = (stderr or b"").decode("utf-8", errors="ignore")[-DIAGNOSTIC_TAIL:]
        raise TranscodeTimeout(f"{Path(str(cmd[0])).name} killed after {timeout}s", timeout=timeout, diagnostic=diagnostic)
    return proc.returncode, (stderr or b"").decode("utf-8", errors="ignore")


class TranscodeInvoker:
    def __init__(self, ffmpeg_bin=None, ffprobe_bin=None, timeout=None, probe_timeout=None):
        self.ffmpeg_bin = ffmpeg_bin or settings.FFMPEG_BIN
        self.ffprobe_bin = ffprobe_bin or settings.FFPROBE_BIN
        self.timeout = timeout if timeout is not None else settings.TRANSCODE_TIMEOUT_SECONDS
        self.probe_timeout = probe_timeout if probe_timeout is not None else settings.PROBE_TIMEOUT_SECONDS

    def invoke(self, operation: TranscodeOperation) -> Path:
        """Run one ffmpeg operation and return its verified output path."""
        cmd = operation.build_args(self.ffmpeg_bin)
        timeout = operation.timeout if operation.timeout is not None else self.timeout
        output = Path(operation.output)
        try:
            code, diagnostic = run_process(cmd, timeout)
        except TranscodeTimeout:
            output.unlink(missing_ok=True)
            raise
        if code != 0:
            output.unlink(missing_ok=True)
            raise TranscodeError(
                f"ffmpeg exited with status {code}",
                exit_code=code,
                diagnostic=diagnostic[-DIAGNOSTIC_TAIL:],
            )
        if not output.is_file() or output.stat().st_size == 0:
            output.unlink(missing_ok=True)
            raise TranscodeError("output not produced", exit_code=code, diagnostic=diagnostic[-DIAGNOSTIC_TAIL:])
        return output


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    fps: float
    has_audio: bool
    duration_seconds: float
    probed: bool = True
    # exact rate when probed, e.g. Fraction(30000, 1001); fps is its float value
    rate: Optional[Fraction] = None

    @property
    def rate_arg(self) -> str:
        """Frame rate as ffmpeg accepts it: "30000/1001" or "30"."""
        rate = self.rate if self.rate is not None else Fraction(self.fps).limit_denominator(1001)
        return str(rate)


def parse_rate(value) -> Optional[Fraction]:
    """Parse ffprobe rates like '30000/1001' or '25' as an exact rational."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    try:
        if "/" in s:
            num, den = s.split("/", 1)
            if int(den) == 0:
                return None
            rate = Fraction(int(num), int(den))
        else:
            rate = Fraction(s)
    except (ValueError, ZeroDivisionError):
        return None
    return rate if rate > 0 else None


def parse_frame_rate(value) -> Optional[float]:
    rate = parse_rate(value)
    return float(rate) if rate is not None else None


def probe_video(path, invoker: TranscodeInvoker | None = None) -> VideoInfo:
    """Width, height and frame rate of the first video stream, or the default triplet."""
    invoker = invoker or TranscodeInvoker()
    cmd = [
        invoker.ffprobe_bin,
        "-v", "error",
        "-show_entries", "stream=codec_type,width,height,r_frame_rate:format=duration",
        "-of", "json",
        str(path),
    ]
    fallback = VideoInfo(DEFAULT_WIDTH, DEFAULT_HEIGHT, DEFAULT_FPS, False, 0.0, probed=False, rate=Fraction(int(DEFAULT_FPS)))
    try:
        out = subprocess.run(cmd, check=True, capture_output=True, timeout=invoker.probe_timeout)
        data = json.loads(out.stdout.decode("utf-8", errors="ignore") or "{}")
    except (subprocess.SubprocessError, OSError, ValueError) as exc:
        logger.warning("probe failed for %s, using defaults: %s", path, exc)
        return fallback

    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if not video or not video.get("width") or not video.get("height"):
        logger.warning("no video stream found in %s, using defaults", path)
        return fallback

    rate = parse_rate(video.get("r_frame_rate")) or Fraction(int(DEFAULT_FPS))
    try:
        duration = float((data.get("format") or {}).get("duration") or 0.0)
    except ValueError:
        duration = 0.0
    return VideoInfo(
        width=int(video["width"]),
        height=int(video["height"]),
        fps=float(rate),
        rate=rate,
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
        duration_seconds=duration,
    )
