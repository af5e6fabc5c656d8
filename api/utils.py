import os, mimetypes
from pathlib import Path
from uuid import uuid4
from django.conf import settings


def save_uploaded_file(djangofile) -> Path:
    """Save to PIPELINE_TEMP_ROOT/<uuid>_upload_<name> and return the absolute path."""
    root = Path(settings.PIPELINE_TEMP_ROOT)
    root.mkdir(parents=True, exist_ok=True)
    dest = root / f"{uuid4().hex}_upload_{os.path.basename(djangofile.name)}"
    with open(dest, "wb") as f:
        for chunk in djangofile.chunks():
            f.write(chunk)
    return dest


def guess_kind(path: str) -> str:
    """Return 'image' | 'video' | 'audio' | 'other' based on mimetype/extension."""
    mime, _ = mimetypes.guess_type(path)
    if not mime:
        return "other"
    for kind in ("image", "video", "audio"):
        if mime.startswith(f"{kind}/"):
            return kind
    return "other"
