"""Credential lookup from cluster secrets and explicit options."""

from typing import Dict, Optional

from cnvrgctl.constants import (
    REDIS_CONF_FIELD,
    REDIS_PASSWORD_FIELD,
    STORAGE_FIELD_PREFIX,
    STORAGE_TYPE_AWS,
    STORAGE_TYPE_MINIO,
)
from cnvrgctl.errors import CredentialError, TransportError
from cnvrgctl.errors_catalog import actionable_error
from cnvrgctl.models import BackendKind, ObjectStoreTarget

STORAGE_TYPES = {
    STORAGE_TYPE_MINIO: BackendKind.S3_COMPATIBLE,
    STORAGE_TYPE_AWS: BackendKind.S3_NATIVE,
}


class CredentialResolver:
    """Builds validated credential objects; secret values are never logged."""

    def __init__(self, cluster, logger):
        self.cluster = cluster
        self.logger = logger

    def _read_secret(self, namespace: str, name: str) -> Dict[str, str]:
        try:
            return self.cluster.read_secret(namespace, name)
        except TransportError as exc:
            raise CredentialError(
                f"{actionable_error('secret_not_found', name=name, namespace=namespace)} Cause: {exc}"
            ) from exc

    @staticmethod
    def _backend_kind(storage_type: str) -> BackendKind:
        kind = STORAGE_TYPES.get((storage_type or "").strip().lower())
        if kind is None:
            raise CredentialError(actionable_error("unsupported_storage_type", storage_type=storage_type))
        return kind

    def resolve_object_store(
        self,
        namespace: str,
        secret_name: str,
        endpoint: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        bucket: Optional[str] = None,
        storage_type: Optional[str] = None,
        region: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> ObjectStoreTarget:
        """Returns the bucket target from explicit values when complete, else from the secret.

        Explicit values count as complete when access key, secret key, bucket
        and storage type are all set. Partial explicit values are ignored.
        """
        explicit = {
            "endpoint": endpoint,
            "access_key": access_key,
            "secret_key": secret_key,
            "bucket": bucket,
            "storage_type": storage_type,
            "region": region,
            "session_token": session_token,
        }
        core_fields = ("access_key", "secret_key", "bucket", "storage_type")

        if all(explicit[name] for name in core_fields):
            self.logger.info("Using object storage credentials from command-line options.")
            return ObjectStoreTarget(
                endpoint_url=endpoint or "",
                access_key=access_key,
                secret_key=secret_key,
                bucket_name=bucket,
                backend_kind=self._backend_kind(storage_type),
                session_token=session_token,
                region=region,
            )

        given = sorted(name for name, value in explicit.items() if value)
        if given:
            self.logger.warning(
                "Ignoring incomplete object storage options (%s); reading secret %s instead.",
                ", ".join(given),
                secret_name,
            )

        data = self._read_secret(namespace, secret_name)

        def field(name: str, required: bool = True) -> Optional[str]:
            key = f"{STORAGE_FIELD_PREFIX}{name}"
            value = data.get(key)
            if required and not value:
                raise CredentialError(actionable_error("secret_missing_field", name=secret_name, field=key))
            return value or None

        kind = self._backend_kind(field("TYPE"))
        target = ObjectStoreTarget(
            endpoint_url=field("ENDPOINT", required=kind == BackendKind.S3_COMPATIBLE) or "",
            access_key=field("ACCESS_KEY"),
            secret_key=field("SECRET_KEY"),
            bucket_name=field("BUCKET"),
            backend_kind=kind,
            session_token=field("SESSION_TOKEN", required=False),
            region=field("REGION", required=False),
        )
        self.logger.info("Loaded %s credentials for bucket %s from secret %s.", kind.value, target.bucket_name, secret_name)
        return target

    def resolve_redis(self, namespace: str, secret_name: str) -> Dict[str, str]:
        """Returns ``{"password": ..., "redis_conf": ...}`` from the redis secret."""
        data = self._read_secret(namespace, secret_name)
        password = data.get(REDIS_PASSWORD_FIELD)
        if not password:
            raise CredentialError(
                actionable_error("secret_missing_field", name=secret_name, field=REDIS_PASSWORD_FIELD)
            )
        return {"password": password, "redis_conf": data.get(REDIS_CONF_FIELD, "")}
