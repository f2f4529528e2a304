"""S3-backed storage for uploaded statements.

Used when ``storage_backend`` is ``s3``. Objects are written under ``KEY_PREFIX`` and the
object key is what gets stored as the import's file path.
"""

import boto3
from botocore.exceptions import ClientError

from invoice_importer.core.settings import Settings, get_settings
from invoice_importer.core.utils import get_logger

logger = get_logger("invoice-importer.storage")

KEY_PREFIX = "statements/"
MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "404"})


class S3FileService:
    """Storage backend keeping statements in an S3 bucket."""

    def __init__(self, settings: Settings | None = None, client: object | None = None) -> None:
        """Initialize the backend and ensure the bucket exists."""
        settings = settings or get_settings()
        self.s3 = client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
        )
        self.bucket = settings.S3_BUCKET
        self.ensure_bucket()

    def ensure_bucket(self) -> None:
        """Ensure the S3 bucket exists, create if not present."""
        try:
            self.s3.head_bucket(Bucket=self.bucket)
        except ClientError:
            logger.info(f"Creating bucket {self.bucket}")
            self.s3.create_bucket(Bucket=self.bucket)

    def write(self, key: str, data: bytes) -> str:
        """Upload ``data`` and return the object key."""
        object_key = f"{KEY_PREFIX}{key}"
        self.s3.put_object(Bucket=self.bucket, Key=object_key, Body=data)
        return object_key

    def read(self, key: str) -> bytes:
        """Download an object by key; a missing object raises FileNotFoundError."""
        try:
            obj = self.s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_OBJECT_CODES:
                msg = f"s3://{self.bucket}/{key}"
                raise FileNotFoundError(msg) from exc
            raise
        return obj["Body"].read()
