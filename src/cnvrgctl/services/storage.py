"""Object storage clients and local/bucket synchronization."""

import os
import tempfile
from typing import Iterator, Tuple
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from minio import Minio
from minio.error import MinioException

from cnvrgctl.errors import CnvrgctlError, TransferError, TransportError
from cnvrgctl.models import BackendKind, ObjectStoreTarget, SyncResult

# Every SDK call is attempted exactly once.
S3_SINGLE_ATTEMPT_CONFIG = Config(
    retries={"max_attempts": 1, "mode": "standard"},
    connect_timeout=10,
    read_timeout=120,
)


class ObjectStoreClient:
    """Operations the synchronizer needs from one bucket."""

    def __init__(self, target: ObjectStoreTarget):
        self.target = target

    @property
    def bucket_name(self) -> str:
        return self.target.bucket_name

    def verify(self):
        raise NotImplementedError

    def list_keys(self) -> Iterator[str]:
        raise NotImplementedError

    def get(self, key: str, local_path: str):
        raise NotImplementedError

    def put(self, local_path: str, key: str):
        raise NotImplementedError


class S3NativeStore(ObjectStoreClient):
    """AWS S3 through ``boto3``."""

    def __init__(self, target: ObjectStoreTarget, client=None):
        super().__init__(target)
        if client is None:
            client_kwargs = {
                "aws_access_key_id": target.access_key,
                "aws_secret_access_key": target.secret_key,
                "config": S3_SINGLE_ATTEMPT_CONFIG,
            }
            if target.session_token:
                client_kwargs["aws_session_token"] = target.session_token
            if target.region:
                client_kwargs["region_name"] = target.region
            if target.endpoint_url:
                client_kwargs["endpoint_url"] = target.endpoint_url
            client = boto3.client("s3", **client_kwargs)
        self.client = client

    def verify(self):
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"Cannot access bucket {self.bucket_name}: {exc}") from exc

    def list_keys(self) -> Iterator[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket_name):
                for item in page.get("Contents", []):
                    # Zero-byte "folder" markers end with a slash.
                    if not item["Key"].endswith("/"):
                        yield item["Key"]
        except (ClientError, BotoCoreError) as exc:
            raise TransportError(f"Listing bucket {self.bucket_name} failed: {exc}") from exc

    def get(self, key: str, local_path: str):
        try:
            self.client.download_file(self.bucket_name, key, local_path)
        except (ClientError, BotoCoreError) as exc:
            raise TransferError(f"Downloading {key} from {self.bucket_name} failed: {exc}") from exc

    def put(self, local_path: str, key: str):
        try:
            self.client.upload_file(local_path, self.bucket_name, key)
        except (ClientError, BotoCoreError) as exc:
            raise TransferError(f"Uploading {key} to {self.bucket_name} failed: {exc}") from exc


class S3CompatibleStore(ObjectStoreClient):
    """MinIO and other S3-compatible endpoints through ``minio``."""

    def __init__(self, target: ObjectStoreTarget, client=None):
        super().__init__(target)
        if client is None:
            host, secure = self.split_endpoint(target.endpoint_url)
            client = Minio(
                host,
                access_key=target.access_key,
                secret_key=target.secret_key,
                session_token=target.session_token,
                secure=secure,
                region=target.region,
            )
        self.client = client

    @staticmethod
    def split_endpoint(endpoint_url: str) -> Tuple[str, bool]:
        """Returns ``(host[:port], secure)``; endpoints without a scheme are plain HTTP."""
        if "://" not in endpoint_url:
            return endpoint_url.rstrip("/"), False
        parsed = urlparse(endpoint_url)
        return parsed.netloc, parsed.scheme == "https"

    def verify(self):
        try:
            exists = self.client.bucket_exists(self.bucket_name)
        except (MinioException, OSError, ValueError) as exc:
            raise TransportError(f"Cannot access bucket {self.bucket_name}: {exc}") from exc
        if not exists:
            raise TransportError(f"Bucket {self.bucket_name} does not exist at {self.target.endpoint_url}.")

    def list_keys(self) -> Iterator[str]:
        try:
            for item in self.client.list_objects(self.bucket_name, recursive=True):
                if not item.is_dir:
                    yield item.object_name
        except (MinioException, OSError, ValueError) as exc:
            raise TransportError(f"Listing bucket {self.bucket_name} failed: {exc}") from exc

    def get(self, key: str, local_path: str):
        try:
            self.client.fget_object(self.bucket_name, key, local_path)
        except (MinioException, OSError, ValueError) as exc:
            raise TransferError(f"Downloading {key} from {self.bucket_name} failed: {exc}") from exc

    def put(self, local_path: str, key: str):
        try:
            self.client.fput_object(self.bucket_name, key, local_path)
        except (MinioException, OSError, ValueError) as exc:
            raise TransferError(f"Uploading {key} to {self.bucket_name} failed: {exc}") from exc


def build_object_store(target: ObjectStoreTarget) -> ObjectStoreClient:
    if target.backend_kind == BackendKind.S3_NATIVE:
        return S3NativeStore(target)
    return S3CompatibleStore(target)


class ObjectStorageSynchronizer:
    """Mirrors regular files between a local directory and a bucket.

    A sync is not transactional: the first failing object stops it, and the
    result lists the keys that were already transferred.
    """

    def __init__(self, filesystem_service, logger, console):
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console

    def sync_up(self, store: ObjectStoreClient, local_root: str) -> SyncResult:
        result = SyncResult(succeeded=False)
        self.logger.info("Uploading %s to bucket %s", local_root, store.bucket_name)
        try:
            for path, key in self.filesystem_service.iter_regular_files(local_root):
                store.put(path, key)
                result.transferred.append(key)
                self.logger.debug("Uploaded %s", key)
        except CnvrgctlError as exc:
            result.error = exc
            self.logger.error("Upload stopped after %s object(s): %s", len(result.transferred), exc)
            return result

        result.succeeded = True
        self.console.print(
            f"[green]Uploaded {len(result.transferred)} object(s) to {store.bucket_name}.[/green]"
        )
        return result

    def sync_down(self, store: ObjectStoreClient, local_root: str) -> SyncResult:
        result = SyncResult(succeeded=False)
        self.logger.info("Downloading bucket %s to %s", store.bucket_name, local_root)
        try:
            self.filesystem_service.ensure_directory(local_root)
            for key in store.list_keys():
                dest_path = self.filesystem_service.safe_join(local_root, key)
                self.filesystem_service.ensure_directory(os.path.dirname(dest_path))
                self._download(store, key, dest_path)
                result.transferred.append(key)
                self.logger.debug("Downloaded %s", key)
        except CnvrgctlError as exc:
            result.error = exc
            self.logger.error("Download stopped after %s object(s): %s", len(result.transferred), exc)
            return result

        result.succeeded = True
        self.console.print(
            f"[green]Downloaded {len(result.transferred)} object(s) from {store.bucket_name}.[/green]"
        )
        return result

    @staticmethod
    def _download(store: ObjectStoreClient, key: str, dest_path: str):
        directory = os.path.dirname(dest_path)
        try:
            fd, temp_path = tempfile.mkstemp(prefix=".download-", dir=directory)
            os.close(fd)
        except OSError as exc:
            raise TransferError(f"Cannot write to {directory}: {exc}") from exc

        try:
            store.get(key, temp_path)
            os.replace(temp_path, dest_path)
        except OSError as exc:
            raise TransferError(f"Failed to save {dest_path}: {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
