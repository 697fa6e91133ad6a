import io
import unittest
from unittest.mock import MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError

from credit_pipeline.exceptions import StorageError
from credit_pipeline.storage_client import StorageClient


def _client_error(code, operation="GetObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class StorageClientTests(unittest.TestCase):
    def setUp(self):
        self.s3 = MagicMock()
        self.storage = StorageClient(s3_client=self.s3, bucket_name="reports")

    def test_download_returns_body(self):
        self.s3.get_object.return_value = {"Body": io.BytesIO(b"%PDF-1.4 data")}

        self.assertEqual(self.storage.download_bytes("u1/a.pdf"), b"%PDF-1.4 data")
        self.s3.get_object.assert_called_once_with(Bucket="reports", Key="u1/a.pdf")

    def test_missing_object(self):
        self.s3.get_object.side_effect = _client_error("NoSuchKey")
        with self.assertRaises(StorageError) as ctx:
            self.storage.download_bytes("u1/a.pdf")
        self.assertEqual(ctx.exception.reason, "blob_not_found")

    def test_other_client_error_is_fetch_failure(self):
        self.s3.get_object.side_effect = _client_error("AccessDenied")
        with self.assertRaises(StorageError) as ctx:
            self.storage.download_bytes("u1/a.pdf")
        self.assertEqual(ctx.exception.reason, "blob_fetch_failed: AccessDenied")

    def test_unreachable_endpoint_is_fetch_failure(self):
        self.s3.get_object.side_effect = EndpointConnectionError(endpoint_url="https://r2.example")
        with self.assertRaises(StorageError) as ctx:
            self.storage.download_bytes("u1/a.pdf")
        self.assertTrue(ctx.exception.reason.startswith("blob_fetch_failed: "))

    def test_missing_body(self):
        self.s3.get_object.return_value = {}
        with self.assertRaises(StorageError) as ctx:
            self.storage.download_bytes("u1/a.pdf")
        self.assertEqual(ctx.exception.reason, "blob_empty_body")

    def test_upload_failure_raises(self):
        self.s3.put_object.side_effect = _client_error("InternalError", "PutObject")
        with self.assertRaises(StorageError):
            self.storage.upload_bytes("letters/u1/R1_equifax.pdf", b"%PDF")

    def test_presigned_put_carries_content_type(self):
        self.s3.generate_presigned_url.return_value = "https://signed"

        url = self.storage.presigned_put_url("u1/a.pdf", content_type="application/pdf", expires_in=60)

        self.assertEqual(url, "https://signed")
        self.s3.generate_presigned_url.assert_called_once_with(
            "put_object",
            Params={"Bucket": "reports", "Key": "u1/a.pdf", "ContentType": "application/pdf"},
            ExpiresIn=60,
        )

    def test_unhealthy_when_bucket_unreachable(self):
        self.s3.head_bucket.side_effect = _client_error("403", "HeadBucket")
        self.assertFalse(self.storage.is_healthy())


if __name__ == "__main__":
    unittest.main()
