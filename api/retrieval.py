"""
Remote source retrieval.

A source reference is tried against an ordered ladder of strategies; a failing
strategy only advances the ladder, and only exhausting it raises RetrievalError.
Retrieved videos are re-encoded into a bounded envelope before use.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import requests
from botocore.exceptions import BotoCoreError, ClientError
from bs4 import BeautifulSoup
from django.conf import settings

from .artifacts import ArtifactStore
from .errors import ParseError, RetrievalError, TranscodeError
from .s3 import download_object
from .transcode import InputSpec, TranscodeInvoker, TranscodeOperation

logger = logging.getLogger(__name__)

DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc"
CONFIRM_REQUIRED_FIELDS = ("id", "export", "confirm")
CONFIRM_OPTIONAL_FIELDS = ("uuid", "at")

_DRIVE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{20,}$")
_DRIVE_PATH_RE = re.compile(r"/(?:file/)?d/([A-Za-z0-9_-]+)")

# Content-types that mean "a page came back instead of the file"
_REJECT_TYPES = ("text/", "application/json", "application/xhtml+xml")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/125.0.0.0 Safari/537.36"
)


class StrategyFailed(Exception):
    """One rung of the ladder failed; the next one should be tried."""


def _looks_like_html(head: bytes) -> bool:
    sniff = head[:512].lstrip().lower()
    return sniff.startswith(b"<!doctype html") or sniff.startswith(b"<html") or b"<head" in sniff


def is_remote_url(ref: str) -> bool:
    return urlparse(ref).scheme in ("http", "https")


def drive_file_id(ref: str) -> Optional[str]:
    """File id of a Google Drive sharing link or bare id, else None."""
    if "://" not in ref:
        return ref if _DRIVE_ID_RE.match(ref) else None
    parsed = urlparse(ref)
    if not parsed.netloc.endswith("google.com"):
        return None
    m = _DRIVE_PATH_RE.search(parsed.path)
    if m:
        return m.group(1)
    return dict(parse_qsl(parsed.query)).get("id")


def direct_url(ref: str) -> str:
    file_id = drive_file_id(ref)
    if file_id:
        return f"{DRIVE_DOWNLOAD_URL}?{urlencode({'export': 'download', 'id': file_id})}"
    return ref


def with_query(url: str, **params) -> str:
    parsed = urlparse(url)
    qs = dict(parse_qsl(parsed.query, keep_blank_values=True))
    qs.update(params)
    return urlunparse(parsed._replace(query=urlencode(qs)))


def parse_confirmation_form(html: str, base_url: str) -> str:
    """Rebuild the real download URL from a sharing service's confirmation page."""
    soup = BeautifulSoup(html, "html.parser")
    form = soup.find("form", id="download-form") or soup.find("form", action=True)
    if form is None or not form.get("action"):
        raise ParseError("confirmation page has no download form")

    fields = {}
    for inp in form.find_all("input", attrs={"type": "hidden"}):
        name = inp.get("name")
        if name:
            fields[name] = inp.get("value", "")
    missing = [name for name in CONFIRM_REQUIRED_FIELDS if not fields.get(name)]
    if missing:
        raise ParseError(f"confirmation form is missing fields: {missing}")

    params = {name: fields[name] for name in CONFIRM_REQUIRED_FIELDS}
    params.update({name: fields[name] for name in CONFIRM_OPTIONAL_FIELDS if fields.get(name)})
    action = urljoin(base_url, form["action"])
    return with_query(action, **params)


def _is_object_key(ref: str) -> bool:
    return ref.startswith("s3://") or ("://" not in ref and "/" in ref)


class RetrievalClient:
    def __init__(self, store: ArtifactStore | None = None, session: requests.Session | None = None,
                 invoker: TranscodeInvoker | None = None, timeout: float | None = None,
                 max_bytes: int | None = None):
        self.store = store or ArtifactStore()
        self.session = session or self._build_session()
        self.invoker = invoker or TranscodeInvoker()
        self.timeout = timeout if timeout is not None else settings.DOWNLOAD_TIMEOUT_SECONDS
        self.max_bytes = max_bytes if max_bytes is not None else settings.MAX_DOWNLOAD_BYTES

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})
        return session

    # ---------- public ----------

    def retrieve(self, source_ref: str) -> Path:
        """Download ``source_ref`` and return the normalized local video."""
        raw = self.fetch(source_ref, kind="video")
        try:
            return self.normalize(raw)
        finally:
            self.store.discard(raw)

    def fetch(self, ref: str, kind: str, suffix: str | None = None) -> Path:
        """Run the strategy ladder for ``ref`` and return the raw local file."""
        ref = (ref or "").strip()
        if not ref:
            raise RetrievalError("empty source reference")
        suffix = suffix or _default_suffix(ref, kind)

        if _is_object_key(ref):
            return self._fetch_object(ref, kind, suffix)

        attempts: list[tuple[str, str]] = []
        for name, strategy in self.strategies():
            dest = self.store.new_path(kind, suffix)
            try:
                strategy(ref, dest)
            except (StrategyFailed, ParseError, requests.RequestException) as exc:
                self.store.discard(dest)
                logger.info("retrieval strategy %s failed for %s: %s", name, ref, exc)
                attempts.append((name, str(exc)))
                continue
            except BaseException:
                # e.g. ENOSPC mid-write: no partial file survives
                self.store.discard(dest)
                raise
            logger.info("retrieved %s via %s (%d bytes)", ref, name, dest.stat().st_size)
            return dest
        raise RetrievalError(f"all retrieval strategies failed for {ref}", attempts)

    def strategies(self) -> list[tuple[str, Callable[[str, Path], None]]]:
        return [
            ("direct", self._direct),
            ("bypass", self._bypass),
            ("scrape", self._scrape),
        ]

    def normalize(self, raw: Path) -> Path:
        """Re-encode into the bounded resolution/bitrate envelope."""
        out = self.store.new_path("video", ".mp4")
        limit = int(settings.NORMALIZE_MAX_DIMENSION)
        scale = (
            f"scale=w='min(iw,{limit})':h='min(ih,{limit})'"
            ":force_original_aspect_ratio=decrease:force_divisible_by=2"
        )
        op = TranscodeOperation(
            inputs=[InputSpec(raw)],
            output=out,
            video_filter=scale,
            output_options=[
                "-c:v", "libx264",
                "-preset", "veryfast",
                "-crf", "23",
                "-maxrate", settings.NORMALIZE_MAX_BITRATE,
                "-bufsize", "8M",
                "-pix_fmt", "yuv420p",
                "-c:a", "aac",
                "-b:a", "128k",
                "-movflags", "+faststart",
            ],
        )
        try:
            return self.invoker.invoke(op)
        except TranscodeError:
            self.store.discard(out)
            raise

    # ---------- strategies ----------

    def _direct(self, ref: str, dest: Path) -> None:
        if not is_remote_url(ref) and not drive_file_id(ref):
            raise StrategyFailed(f"not a downloadable reference: {ref}")
        self._stream_to(direct_url(ref), dest)

    def _bypass(self, ref: str, dest: Path) -> None:
        if not is_remote_url(ref) and not drive_file_id(ref):
            raise StrategyFailed(f"not a downloadable reference: {ref}")
        self._stream_to(with_query(direct_url(ref), confirm="t"), dest)

    def _scrape(self, ref: str, dest: Path) -> None:
        if not is_remote_url(ref) and not drive_file_id(ref):
            raise StrategyFailed(f"not a downloadable reference: {ref}")
        url = direct_url(ref)
        resp = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        resp.raise_for_status()
        real_url = parse_confirmation_form(resp.text, resp.url or url)
        logger.debug("confirmation form resolved to %s", real_url)
        self._stream_to(real_url, dest)

    def _stream_to(self, url: str, dest: Path) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout, allow_redirects=True) as r:
            if r.status_code >= 400:
                raise StrategyFailed(f"HTTP {r.status_code}")
            content_type = (r.headers.get("Content-Type") or "").split(";")[0].strip().lower()
            if content_type.startswith(_REJECT_TYPES):
                raise StrategyFailed(f"unexpected content-type {content_type}")

            total = 0
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    if not chunk:
                        continue
                    if total == 0 and _looks_like_html(chunk[:4096]):
                        raise StrategyFailed("received an HTML page instead of media")
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise StrategyFailed("file too large")
                    f.write(chunk)
        if total == 0:
            raise StrategyFailed("empty download")

    def _fetch_object(self, ref: str, kind: str, suffix: str) -> Path:
        dest = self.store.new_path(kind, suffix)
        try:
            download_object(ref, dest)
        except (BotoCoreError, ClientError) as exc:
            self.store.discard(dest)
            raise RetrievalError(f"object download failed for {ref}", [("object", str(exc))]) from exc
        except BaseException:
            self.store.discard(dest)
            raise
        if not dest.is_file() or dest.stat().st_size == 0:
            self.store.discard(dest)
            raise RetrievalError(f"object {ref} is empty", [("object", "empty download")])
        return dest


def _default_suffix(ref: str, kind: str) -> str:
    suffix = Path(urlparse(ref).path).suffix.lower()
    if suffix and len(suffix) <= 6:
        return suffix
    return {"video": ".mp4", "music": ".mp3", "thumbnail": ".img"}.get(kind, ".bin")
