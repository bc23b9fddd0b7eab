"""S3 backend for the cloud backup source."""

import boto3
import logging
import os
from typing import List, Optional
from botocore.exceptions import ClientError, NoCredentialsError
from ..config.settings import Config
from ..utils.paths import split_remote_ref
from ..utils.progress import ProgressReporter


logger = logging.getLogger(__name__)


class S3Stream:
    """Readable object body with the same shape as a streamed command."""

    def __init__(self, body):
        self.stdout = body

    def kill(self):
        self.stdout.close()

    def wait(self, timeout: Optional[float] = None):
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stdout.close()


class S3Backend:
    """Reads backups stored as ``bucket:prefix/name`` objects."""

    def __init__(self, config: Config):
        self.config = config
        self._client = None

    @property
    def client(self):
        """Lazy initialization of S3 client."""
        if self._client is None:
            self._client = boto3.client(
                's3',
                aws_access_key_id=self.config.s3_access_key_id,
                aws_secret_access_key=self.config.s3_secret_access_key,
                endpoint_url=self.config.s3_endpoint_url
            )
        return self._client

    @staticmethod
    def _split(ref: str):
        bucket, key = split_remote_ref(ref)
        return bucket, key.strip("/")

    def list(self, ref: str) -> List[str]:
        """Object names directly under a prefix."""
        bucket, prefix = self._split(ref)
        if prefix:
            prefix += "/"
        names = []
        try:
            paginator = self.client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if name:
                        names.append(name)
        except NoCredentialsError as e:
            raise OSError(f"S3 credentials not available: {e}")
        except ClientError as e:
            raise OSError(f"Error listing s3 bucket {bucket}: {e}")
        return names

    def open_stream(self, ref: str) -> S3Stream:
        bucket, key = self._split(ref)
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response['Error']['Code'] in ('NoSuchKey', '404'):
                raise FileNotFoundError(f"Object {ref} not found")
            raise OSError(f"Error reading s3 object {ref}: {e}")
        return S3Stream(response['Body'])

    def read(self, ref: str) -> bytes:
        with self.open_stream(ref) as stream:
            return stream.stdout.read()

    def download(self, ref: str, local_path: str, progress: bool = True):
        """Download one object to a local file."""
        bucket, key = self._split(ref)
        try:
            size = self.client.head_object(Bucket=bucket, Key=key)['ContentLength']
        except ClientError as e:
            if e.response['Error']['Code'] in ('NoSuchKey', '404'):
                raise FileNotFoundError(f"Object {ref} not found")
            raise OSError(f"Error reading s3 object {ref}: {e}")

        reporter = ProgressReporter(size, os.path.basename(key), unit="B", unit_scale=True,
                                    disable=not progress)
        with reporter:
            self.client.download_file(bucket, key, local_path, Callback=reporter.advance)
        logger.debug(f"Downloaded s3://{bucket}/{key} to {local_path}")
