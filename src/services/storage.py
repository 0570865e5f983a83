"""Object storage service for original and translated documents."""

import logging
import re
from io import BytesIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.config import get_settings
from src.services.exceptions import StorageError

settings = get_settings()
logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    """Strip directories and characters that don't belong in an object key."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    return name or "document"


def job_prefix(owner_id: str, job_id: str) -> str:
    return f"owners/{owner_id}/jobs/{job_id}/"


def original_path(owner_id: str, job_id: str, filename: str) -> str:
    return f"{job_prefix(owner_id, job_id)}original/{safe_filename(filename)}"


def translated_path(owner_id: str, job_id: str, filename: str) -> str:
    return f"{job_prefix(owner_id, job_id)}translated/{safe_filename(filename)}"


def work_path(owner_id: str, job_id: str, name: str) -> str:
    """Intermediate artifacts a job needs across ticks."""
    return f"{job_prefix(owner_id, job_id)}work/{safe_filename(name)}"


class StorageService:
    """Service for managing object storage (MinIO/S3)."""

    def __init__(self):
        self._client = None
        self._bucket = settings.minio_bucket

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            endpoint_url = f"{'https' if settings.minio_use_ssl else 'http'}://{settings.minio_endpoint}"
            self._client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=settings.minio_access_key,
                aws_secret_access_key=settings.minio_secret_key,
                config=Config(signature_version="s3v4"),
            )
            self._ensure_bucket()
        return self._client

    def _ensure_bucket(self):
        """Create bucket if it doesn't exist."""
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        """Store bytes under ``path``. Returns the storage path."""
        try:
            self.client.upload_fileobj(
                BytesIO(content),
                self._bucket,
                path,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {path} failed: {e}")
        return path

    def download(self, path: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self._bucket, Key=path)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download of {path} failed: {e}")

    def delete(self, path: str):
        try:
            self.client.delete_object(Bucket=self._bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {path} failed: {e}")

    def delete_job_files(self, owner_id: str, job_id: str):
        """Delete every object under a job's prefix."""
        prefix = job_prefix(owner_id, job_id)
        try:
            response = self.client.list_objects_v2(Bucket=self._bucket, Prefix=prefix)
            if "Contents" in response:
                objects = [{"Key": obj["Key"]} for obj in response["Contents"]]
                self.client.delete_objects(Bucket=self._bucket, Delete={"Objects": objects})
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {prefix} failed: {e}")

    def generate_presigned_url(self, path: str, expires_in: int = 3600) -> str:
        """Generate a presigned URL for downloading a file."""
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": path},
            ExpiresIn=expires_in,
        )

    def health_check(self) -> bool:
        """Check if storage is accessible."""
        try:
            self.client.head_bucket(Bucket=self._bucket)
            return True
        except Exception:
            return False


# Singleton instance
storage_service = StorageService()


def get_storage_service() -> StorageService:
    """FastAPI dependency returning the shared storage service."""
    return storage_service
