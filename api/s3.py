import os
from pathlib import Path
import boto3
from botocore.config import Config as BotoConfig
from django.conf import settings


def get_s3_client():
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def get_presign_client():
    """
    Separate client for generating presigned URLs that the browser/curl will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT", settings.S3_ENDPOINT_URL)
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=public_endpoint,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def split_ref(ref: str) -> tuple[str, str]:
    """
    ``s3://bucket/key`` -> (bucket, key); a bare key resolves against S3_BUCKET.
    """
    if ref.startswith("s3://"):
        bucket, _, key = ref[len("s3://"):].partition("/")
        return bucket, key
    return settings.S3_BUCKET, ref.lstrip("/")


def create_presigned_put(key: str, content_type: str | None = None, expires: int | None = None) -> dict:
    """
    Create a presigned PUT URL so a client can upload a source video directly.

    ContentType is not among the signed params; clients may
    still send the header.
    """
    s3 = get_presign_client()
    url = s3.generate_presigned_url(
        ClientMethod="put_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="PUT",
    )
    headers = {"Content-Type": content_type} if content_type else {}
    return {"url": url, "headers": headers}


def create_presigned_get(key: str, expires: int | None = None) -> str:
    s3 = get_presign_client()
    return s3.generate_presigned_url(
        ClientMethod="get_object",
        Params={"Bucket": settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="GET",
    )


def download_object(ref: str, dest) -> Path:
    """Download an object (``s3://bucket/key`` or bare key) to ``dest``."""
    bucket, key = split_ref(ref)
    get_s3_client().download_file(bucket, key, str(dest))
    return Path(dest)


def upload_file(local_path, key: str, content_type: str | None = None):
    """
    Upload a single file to S3/MinIO with an optional Content-Type.
    """
    s3 = get_s3_client()
    extra = {}
    if content_type:
        extra["ContentType"] = content_type
    s3.upload_file(str(local_path), settings.S3_BUCKET, key, ExtraArgs=extra or None)
