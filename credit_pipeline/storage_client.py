import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from credit_pipeline.exceptions import StorageError
from credit_pipeline.settings import settings

logger = logging.getLogger(__name__)


class StorageClient:
    """
    Abstraction for S3-compatible storage (R2/MinIO/S3).
    Downloads uploaded reports, uploads rendered letters and mints
    time-limited signed URLs for direct client access.
    """

    def __init__(self, s3_client=None, bucket_name: Optional[str] = None):
        self.endpoint_url = settings.storage_endpoint_url or None
        self.bucket_name = bucket_name or settings.storage_bucket_name
        self.region = settings.storage_region

        self.s3_client = s3_client or boto3.client(
            's3',
            endpoint_url=self.endpoint_url,
            aws_access_key_id=settings.storage_access_key or None,
            aws_secret_access_key=settings.storage_secret_key or None,
            region_name=self.region,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'},
                connect_timeout=settings.storage_timeout_s,
                read_timeout=settings.storage_timeout_s,
                retries={'max_attempts': 3, 'mode': 'standard'}
            )
        )

    def download_bytes(self, s3_key: str) -> bytes:
        """
        Fetch an object's full body.

        Raises:
            StorageError: the object is missing or the store call failed
        """
        logger.info(f"Downloading s3://{self.bucket_name}/{s3_key}")
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)
            body = response.get('Body')
            if body is None:
                raise StorageError("blob_empty_body")
            data = body.read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            if error_code in ('NoSuchKey', '404'):
                logger.error(f"File not found: s3://{self.bucket_name}/{s3_key}")
                raise StorageError("blob_not_found") from e
            logger.error(f"S3 download error for {s3_key}: {e}")
            raise StorageError(f"blob_fetch_failed: {error_code or e}") from e
        except BotoCoreError as e:
            logger.error(f"S3 download error for {s3_key}: {e}")
            raise StorageError(f"blob_fetch_failed: {e}") from e

        logger.info(f"Successfully downloaded {len(data)} bytes from {s3_key}")
        return data

    def upload_bytes(self, s3_key: str, data: bytes, content_type: str = 'application/pdf') -> None:
        """
        Upload bytes data to the bucket.

        Raises:
            StorageError: the put failed
        """
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket_name}/{s3_key}")
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=data,
                ContentType=content_type
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload error for {s3_key}: {e}")
            raise StorageError(f"blob_upload_failed: {e}") from e
        logger.info(f"Successfully uploaded to s3://{self.bucket_name}/{s3_key}")

    def presigned_put_url(self, s3_key: str, content_type: str = 'application/pdf',
                          expires_in: Optional[int] = None) -> str:
        """Signed URL a client can PUT the object body to directly."""
        return self.s3_client.generate_presigned_url(
            'put_object',
            Params={'Bucket': self.bucket_name, 'Key': s3_key, 'ContentType': content_type},
            ExpiresIn=expires_in or settings.signed_url_expires_s,
        )

    def presigned_get_url(self, s3_key: str, expires_in: Optional[int] = None) -> str:
        """Signed URL a client can GET the object from directly."""
        return self.s3_client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.bucket_name, 'Key': s3_key},
            ExpiresIn=expires_in or settings.signed_url_expires_s,
        )

    def is_healthy(self) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Storage health check failed: {e}")
            return False
