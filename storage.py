"""
Media storage for avatars, booking photos and portfolio files.

Two backends: an S3-compatible bucket (presigned POSTs let the browser
upload directly) and a local directory served under /uploads.
"""

import logging
import mimetypes
import os
import uuid
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Union

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import UpstreamError, ValidationFailed
from schemas import MediaRef

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
}
ALLOWED_IMAGE_EXTENSIONS = {"jpeg", "jpg", "png", "gif"}
ALLOWED_DOCUMENT_TYPES = ALLOWED_IMAGE_TYPES | {"application/pdf"}
ALLOWED_DOCUMENT_EXTENSIONS = ALLOWED_IMAGE_EXTENSIONS | {"pdf"}


class UploadedFile(NamedTuple):
    filename: str
    content_type: Optional[str]
    data: bytes


def _extension(filename: str) -> str:
    return filename.lower().rsplit(".", 1)[-1] if "." in (filename or "") else ""


def validate_upload(
    filename: str, content_type: Optional[str], size_bytes: int, max_bytes: int, allow_documents: bool = False
) -> None:
    """Reject anything that is not an image (or a pdf, for resumes) under the size limit."""
    types = ALLOWED_DOCUMENT_TYPES if allow_documents else ALLOWED_IMAGE_TYPES
    extensions = ALLOWED_DOCUMENT_EXTENSIONS if allow_documents else ALLOWED_IMAGE_EXTENSIONS

    if size_bytes > max_bytes:
        raise ValidationFailed(f"File size exceeds maximum of {max_bytes / (1024 * 1024):.0f}MB")
    if _extension(filename) not in extensions:
        raise ValidationFailed(f"File extension not allowed. Use: {', '.join(sorted(extensions))}")
    if content_type and content_type.lower() not in types:
        raise ValidationFailed("Images only" if not allow_documents else "Images or PDF only")


def generate_key(folder: str, filename: str) -> str:
    ext = _extension(filename)
    name = uuid.uuid4().hex
    return f"{folder.strip('/')}/{name}.{ext}" if ext else f"{folder.strip('/')}/{name}"


def storage_id_of(ref: Union[MediaRef, Dict[str, Any], str, None]) -> Optional[str]:
    if isinstance(ref, MediaRef):
        return ref.storage_id
    if isinstance(ref, dict):
        return ref.get("storage_id")
    return None


class MediaStorage:
    def upload(self, data: bytes, filename: str, content_type: Optional[str], folder: str) -> MediaRef:
        raise NotImplementedError

    def delete(self, storage_id: str) -> None:
        raise NotImplementedError

    def sign_upload(self, folder: str, expires_in: int, document: bool = False) -> Dict[str, Any]:
        raise ValidationFailed("Direct uploads are not available for this deployment")

    def store(self, file: UploadedFile, folder: str, max_bytes: int, allow_documents: bool = False) -> MediaRef:
        validate_upload(file.filename, file.content_type, len(file.data), max_bytes, allow_documents)
        return self.upload(file.data, file.filename, file.content_type, folder)

    def delete_quietly(self, ref: Union[MediaRef, Dict[str, Any], str, None]) -> None:
        """Best-effort cleanup; a failed delete leaves an orphaned object but never fails the request."""
        storage_id = storage_id_of(ref)
        if not storage_id:
            return
        try:
            self.delete(storage_id)
        except Exception as e:
            logger.warning(f"Failed to delete stored media {storage_id}: {e}")


class S3MediaStorage(MediaStorage):
    def __init__(self, client, bucket: str, public_base_url: Optional[str] = None):
        self.client = client
        self.bucket = bucket
        self.public_base_url = (public_base_url or "").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "S3MediaStorage":
        client = boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            config=Config(signature_version="s3v4"),
            region_name=settings.s3_region,
        )
        return cls(client, settings.s3_bucket_name, settings.s3_public_base_url)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"{self.client.meta.endpoint_url.rstrip('/')}/{self.bucket}/{key}"

    def upload(self, data: bytes, filename: str, content_type: Optional[str], folder: str) -> MediaRef:
        key = generate_key(folder, filename)
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Upload of {key} failed: {e}")
            raise UpstreamError("Failed to upload file")
        logger.info(f"Uploaded {key} ({len(data)} bytes)")
        return MediaRef(url=self.public_url(key), storage_id=key)

    def delete(self, storage_id: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=storage_id)
        logger.info(f"Deleted {storage_id}")

    def sign_upload(self, folder: str, expires_in: int, document: bool = False) -> Dict[str, Any]:
        key = f"{folder.strip('/')}/{uuid.uuid4().hex}"
        if document:
            # resumes are PDF only
            key += ".pdf"
            fields = {"Content-Type": "application/pdf"}
            conditions = [{"Content-Type": "application/pdf"}]
        else:
            fields = None
            conditions = [["starts-with", "$Content-Type", "image/"]]
        try:
            post = self.client.generate_presigned_post(
                Bucket=self.bucket,
                Key=key,
                Fields=fields,
                Conditions=conditions,
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Could not sign upload for {key}: {e}")
            raise UpstreamError("Failed to sign upload")
        return {
            "url": post["url"],
            "fields": post["fields"],
            "key": key,
            "storage_id": key,
            "public_url": self.public_url(key),
            "expires_in": expires_in,
        }


class LocalMediaStorage(MediaStorage):
    def __init__(self, root: Union[str, Path], url_prefix: str = "/uploads"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, storage_id: str) -> Path:
        path = (self.root / storage_id).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationFailed("Invalid storage path")
        return path

    def upload(self, data: bytes, filename: str, content_type: Optional[str], folder: str) -> MediaRef:
        key = generate_key(folder, filename)
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as fh:
            fh.write(data)
        logger.info(f"Stored {key} locally ({len(data)} bytes)")
        return MediaRef(url=f"{self.url_prefix}/{key}", storage_id=key)

    def delete(self, storage_id: str) -> None:
        path = self._path(storage_id)
        if path.exists():
            os.remove(path)
            logger.info(f"Deleted {storage_id}")


def build_storage(settings) -> MediaStorage:
    if settings.media_backend == "s3":
        return S3MediaStorage.from_settings(settings)
    return LocalMediaStorage(settings.upload_dir)
