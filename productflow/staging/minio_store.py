"""
MinIO / S3-compatible staging store.

Lists and reads definition artifacts from a bucket prefix written by the
CI pipeline. Uses the `minio` client.
"""

import logging
from typing import Optional

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError

from productflow.errors import StagingError

logger = logging.getLogger(__name__)


class MinioStagingStore:
    """
    Staging store backed by an S3-compatible bucket.

    Attributes:
        endpoint: MinIO server endpoint (host:port)
        bucket: Bucket the CI pipeline writes definitions to
        prefix: Key prefix under which definitions live (e.g. "definitions/")
    """

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        prefix: str = "",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        secure: bool = True,
        client: Optional[Minio] = None,
    ):
        self.endpoint = endpoint
        self.bucket = bucket
        self.prefix = prefix
        self._client = client or Minio(
            endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
        )

    def list_keys(self) -> list[str]:
        """
        List object keys under the prefix.

        Raises:
            StagingError: If the bucket is missing or unreachable
        """
        try:
            objects = self._client.list_objects(self.bucket, prefix=self.prefix, recursive=True)
            return sorted(obj.object_name for obj in objects if not obj.is_dir)
        except S3Error as exc:
            if exc.code == "NoSuchBucket":
                raise StagingError(f"Staging bucket '{self.bucket}' does not exist") from exc
            raise StagingError(f"Failed to list '{self.bucket}/{self.prefix}': {exc}") from exc
        except (OSError, HTTPError) as exc:
            raise StagingError(f"Staging store {self.endpoint} unreachable: {exc}") from exc

    def fetch(self, key: str) -> bytes:
        """
        Download one object.

        Raises:
            StagingError: If the object is missing or the store is unreachable
        """
        response = None
        try:
            response = self._client.get_object(self.bucket, key)
            return response.read()
        except S3Error as exc:
            if exc.code == "NoSuchKey":
                raise StagingError(f"Definition '{key}' not found in bucket '{self.bucket}'") from exc
            raise StagingError(f"Failed to fetch '{key}': {exc}") from exc
        except (OSError, HTTPError) as exc:
            raise StagingError(f"Staging store {self.endpoint} unreachable: {exc}") from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()
