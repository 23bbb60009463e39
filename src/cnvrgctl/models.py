"""Shared domain models for cnvrgctl."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from cnvrgctl.errors import CredentialError


@dataclass(frozen=True)
class ScaleTarget:
    """Ordered workloads of one namespace and the replica count to apply."""

    namespace: str
    workload_names: Tuple[str, ...]
    desired_replicas: int

    def __post_init__(self):
        if self.desired_replicas < 0:
            raise ValueError("desired_replicas must not be negative")
        object.__setattr__(self, "workload_names", tuple(self.workload_names))


@dataclass(frozen=True)
class ExecTarget:
    """Running pod selected to receive exec and port-forward sessions."""

    namespace: str
    pod_name: str
    container_name: Optional[str] = None

    def __str__(self) -> str:
        if self.container_name:
            return f"{self.namespace}/{self.pod_name}[{self.container_name}]"
        return f"{self.namespace}/{self.pod_name}"


@dataclass(frozen=True)
class BackupArtifact:
    """One database or cache dump moved between a pod and local disk."""

    file_name: str
    local_directory: str
    remote_path: str

    @property
    def local_path(self) -> str:
        return os.path.join(self.local_directory, self.file_name)


class BackendKind(str, Enum):
    S3_NATIVE = "s3-native"
    S3_COMPATIBLE = "s3-compatible"


@dataclass(frozen=True)
class ObjectStoreTarget:
    """Bucket location and credentials for exactly one storage backend."""

    endpoint_url: str
    access_key: str
    secret_key: str
    bucket_name: str
    backend_kind: BackendKind
    session_token: Optional[str] = None
    region: Optional[str] = None

    def __post_init__(self):
        required = {
            "access key": self.access_key,
            "secret key": self.secret_key,
            "bucket": self.bucket_name,
        }
        if self.backend_kind == BackendKind.S3_COMPATIBLE:
            required["endpoint"] = self.endpoint_url
        elif not (self.region or self.endpoint_url):
            required["region"] = self.region

        missing = [name for name, value in required.items() if not value]
        if missing:
            raise CredentialError(
                f"Incomplete {self.backend_kind.value} credentials: missing {', '.join(missing)}."
            )

    def __repr__(self) -> str:
        return (
            f"ObjectStoreTarget(endpoint_url={self.endpoint_url!r}, bucket_name={self.bucket_name!r}, "
            f"backend_kind={self.backend_kind.value!r}, region={self.region!r})"
        )


@dataclass(frozen=True)
class ExecResult:
    """Captured output and exit status of one remote command."""

    stdout: bytes
    stderr: bytes
    exit_code: Optional[int]

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


@dataclass
class SyncResult:
    """Outcome of a bucket synchronization; not transactional."""

    succeeded: bool
    transferred: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
