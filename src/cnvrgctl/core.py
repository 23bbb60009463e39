import io
import logging
import os
import posixpath
import uuid
from typing import Any, Dict, Optional, Sequence

from rich.console import Console

from .constants import (
    DEFAULT_FILE_LOCATION,
    DEFAULT_LABEL_KEY,
    DEFAULT_NAMESPACE,
    DEFAULT_SCALE_TIMEOUT,
    DEFAULT_TUNNEL_TIMEOUT,
    DEFAULT_WORKLOADS,
    POSTGRES_BACKUP_FILE,
    POSTGRES_DATABASE,
    POSTGRES_DEPLOYMENT,
    POSTGRES_PORT,
    POSTGRES_REMOTE_DIR,
    REDIS_BACKUP_FILE,
    REDIS_CONF_FIELD,
    REDIS_DATA_DIR,
    REDIS_DEPLOYMENT,
    REDIS_SECRET_NAME,
    STORAGE_SECRET_NAME,
)
from .errors import CnvrgctlError, TransferError
from .errors_catalog import actionable_error
from .models import BackupArtifact, ExecTarget, ScaleTarget
from .services.credentials import CredentialResolver
from .services.database import DatabaseService
from .services.filesystem import FileSystemService
from .services.manifest import ManifestService
from .services.remote_exec import RemoteCommandChannel
from .services.resolver import TargetResolver
from .services.scaler import WorkloadScaler
from .services.storage import ObjectStorageSynchronizer, build_object_store
from .services.transfer import ArtifactTransferService
from .services.tunnel import Tunnel

console = Console()
logger = logging.getLogger("cnvrgctl")

SECRET_OPTIONS = {"access_key", "secret_key", "session_token"}


class BackupOrchestrator:
    """Runs one backup or restore workflow against one namespace."""

    WORKFLOWS = (
        "backup-postgres",
        "backup-redis",
        "backup-files",
        "restore-postgres",
        "restore-redis",
        "restore-files",
    )

    def __init__(
        self,
        cluster,
        namespace: str = DEFAULT_NAMESPACE,
        workloads: Sequence[str] = DEFAULT_WORKLOADS,
        scale_timeout: float = DEFAULT_SCALE_TIMEOUT,
        tunnel_timeout: float = DEFAULT_TUNNEL_TIMEOUT,
        manifest_file: Optional[str] = None,
        require_unique_target: bool = False,
        tunnel_factory=None,
        store_factory=build_object_store,
    ):
        self.cluster = cluster
        self.namespace = namespace
        self.workloads = tuple(workloads)
        self.scale_timeout = scale_timeout
        self.tunnel_timeout = tunnel_timeout
        self.require_unique_target = require_unique_target
        self.tunnel_factory = tunnel_factory or self._build_tunnel
        self.store_factory = store_factory

        self.run_id = uuid.uuid4().hex[:10]
        self.manifest_service = ManifestService(manifest_file=manifest_file, logger=logger)
        self.workloads_scaled_down = False

        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.scaler = WorkloadScaler(cluster, logger=logger, console=console)
        self.resolver = TargetResolver(cluster, logger=logger)
        self.channel = RemoteCommandChannel(cluster, logger=logger)
        self.transfer_service = ArtifactTransferService(
            self.channel,
            self.filesystem_service,
            logger=logger,
            console=console,
        )
        self.database_service = DatabaseService(logger=logger, console=console)
        self.credential_resolver = CredentialResolver(cluster, logger=logger)
        self.synchronizer = ObjectStorageSynchronizer(
            self.filesystem_service,
            logger=logger,
            console=console,
        )

    def _build_tunnel(self, target: ExecTarget, remote_port: int) -> Tunnel:
        return Tunnel(self.cluster, target, remote_port, logger)

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        self.manifest_service.step_finished(name, "success")
        return result

    def _scale_target(self, replicas: int) -> ScaleTarget:
        return ScaleTarget(
            namespace=self.namespace,
            workload_names=self.workloads,
            desired_replicas=replicas,
        )

    def scale_down(self):
        console.print("[blue]Scaling down application workloads...[/blue]")
        target = self._scale_target(0)
        self.workloads_scaled_down = True
        self.scaler.scale_to(target)
        self.scaler.wait_for_termination(target, self.scale_timeout)

    def scale_up(self):
        console.print("[blue]Scaling up application workloads...[/blue]")
        self.scaler.scale_to(self._scale_target(1))
        self.workloads_scaled_down = False

    def _scale_up_after_failure(self):
        try:
            self._run_step("scale_up", self.scale_up)
        except CnvrgctlError as exc:
            logger.error("Scale-up after the failed restore did not succeed: %s", exc)

    def resolve_target(self, deployment: str, label: str) -> ExecTarget:
        return self.resolver.resolve(
            self.namespace,
            deployment,
            label,
            require_unique=self.require_unique_target,
        )

    def _require_local_file(self, path: str):
        if not os.path.isfile(path):
            raise TransferError(actionable_error("local_file_not_found", path=path))

    @staticmethod
    def _auth_stdin(password: str) -> io.BytesIO:
        return io.BytesIO(DatabaseService.redis_auth_stdin(password))

    def backup_postgres(
        self,
        target: str = POSTGRES_DEPLOYMENT,
        label: str = DEFAULT_LABEL_KEY,
        file_location: str = DEFAULT_FILE_LOCATION,
        file_name: str = POSTGRES_BACKUP_FILE,
        disable_scale: bool = False,
    ):
        artifact = BackupArtifact(
            file_name=file_name,
            local_directory=file_location,
            remote_path=posixpath.join(POSTGRES_REMOTE_DIR, file_name),
        )

        if not disable_scale:
            self._run_step("scale_down", self.scale_down)

        exec_target = self._run_step("resolve_target", self.resolve_target, target, label)
        console.print(f"[blue]Dumping database on {exec_target}...[/blue]")
        self._run_step(
            "dump_database",
            self.channel.execute,
            exec_target,
            self.database_service.pg_dump_command(artifact.remote_path),
        )
        local_path = self._run_step(
            "pull_artifact",
            self.transfer_service.pull,
            exec_target,
            artifact.remote_path,
            artifact.local_directory,
            artifact.file_name,
        )
        self.manifest_service.add_artifact("postgres_backup", local_path)
        console.print(f"[green]Backup {artifact.file_name} saved to '{artifact.local_directory}'.[/green]")

        if not disable_scale:
            self._run_step("scale_up", self.scale_up)

    def backup_redis(
        self,
        target: str = REDIS_DEPLOYMENT,
        label: str = DEFAULT_LABEL_KEY,
        file_location: str = DEFAULT_FILE_LOCATION,
        file_name: str = REDIS_BACKUP_FILE,
        secret_name: str = REDIS_SECRET_NAME,
        disable_scale: bool = False,
    ):
        artifact = BackupArtifact(
            file_name=file_name,
            local_directory=file_location,
            remote_path=posixpath.join(REDIS_DATA_DIR, REDIS_BACKUP_FILE),
        )
        redis_secret = self._run_step(
            "read_redis_secret",
            self.credential_resolver.resolve_redis,
            self.namespace,
            secret_name,
        )

        if not disable_scale:
            self._run_step("scale_down", self.scale_down)

        exec_target = self._run_step("resolve_target", self.resolve_target, target, label)
        console.print(f"[blue]Saving Redis snapshot on {exec_target}...[/blue]")
        self._run_step(
            "save_cache",
            self.channel.execute,
            exec_target,
            self.database_service.redis_save_command(),
            stdin=self._auth_stdin(redis_secret["password"]),
        )
        local_path = self._run_step(
            "pull_artifact",
            self.transfer_service.pull,
            exec_target,
            artifact.remote_path,
            artifact.local_directory,
            artifact.file_name,
        )
        self.manifest_service.add_artifact("redis_backup", local_path)
        console.print(f"[green]Backup {artifact.file_name} saved to '{artifact.local_directory}'.[/green]")

        if not disable_scale:
            self._run_step("scale_up", self.scale_up)

    def _object_store(self, secret_name: str, credentials: Dict[str, Any]):
        store_target = self._run_step(
            "resolve_credentials",
            self.credential_resolver.resolve_object_store,
            self.namespace,
            secret_name,
            **credentials,
        )
        store = self.store_factory(store_target)
        self._run_step("verify_bucket", store.verify)
        return store

    def download_bucket(self, store, destination: str):
        result = self.synchronizer.sync_down(store, destination)
        self.manifest_service.add_artifact(
            "files_backup", {"path": destination, "objects": len(result.transferred)}
        )
        if not result.succeeded:
            raise TransferError(
                f"Bucket backup stopped after {len(result.transferred)} object(s): {result.error}"
            ) from result.error
        return result

    def upload_tree(self, store, source: str):
        result = self.synchronizer.sync_up(store, source)
        self.manifest_service.add_artifact(
            "files_restore", {"path": source, "objects": len(result.transferred)}
        )
        if not result.succeeded:
            raise TransferError(
                f"Bucket restore stopped after {len(result.transferred)} object(s): {result.error}"
            ) from result.error
        return result

    def backup_files(
        self,
        secret_name: str = STORAGE_SECRET_NAME,
        destination: Optional[str] = None,
        **credentials,
    ):
        store = self._object_store(secret_name, credentials)
        destination = destination or os.path.join(DEFAULT_FILE_LOCATION, store.bucket_name)

        self._run_step("scale_down", self.scale_down)
        self._run_step("download_bucket", self.download_bucket, store, destination)
        console.print(f"[green]Bucket {store.bucket_name} saved to '{destination}'.[/green]")
        self._run_step("scale_up", self.scale_up)

    def recreate_database(self, exec_target: ExecTarget):
        output = self.channel.execute(exec_target, self.database_service.postgres_password_command())
        password = output.stdout.decode("utf-8").strip() or None

        with self.tunnel_factory(exec_target, POSTGRES_PORT) as tunnel:
            tunnel.wait_until_ready(self.tunnel_timeout)
            self.database_service.quiesce_and_recreate(tunnel, POSTGRES_DATABASE, password=password)

    def restore_postgres(
        self,
        target: str = POSTGRES_DEPLOYMENT,
        label: str = DEFAULT_LABEL_KEY,
        file_location: str = DEFAULT_FILE_LOCATION,
        file_name: str = POSTGRES_BACKUP_FILE,
    ):
        artifact = BackupArtifact(
            file_name=file_name,
            local_directory=file_location,
            remote_path=posixpath.join(POSTGRES_REMOTE_DIR, file_name),
        )
        self._require_local_file(artifact.local_path)
        exec_target = self._run_step("resolve_target", self.resolve_target, target, label)

        try:
            self._run_step("scale_down", self.scale_down)
            self._run_step(
                "push_artifact",
                self.transfer_service.push,
                exec_target,
                artifact.local_path,
                artifact.remote_path,
            )
            self._run_step("recreate_database", self.recreate_database, exec_target)
            console.print(f"[blue]Restoring {artifact.file_name} on {exec_target}...[/blue]")
            self._run_step(
                "restore_database",
                self.channel.execute,
                exec_target,
                self.database_service.pg_restore_command(artifact.remote_path),
            )
        except BaseException:
            self._scale_up_after_failure()
            raise

        self._run_step("scale_up", self.scale_up)

    def update_redis_config(self, secret_name: str, redis_conf: str):
        if not redis_conf:
            logger.warning("Secret %s has no %s entry; leaving it unchanged.", secret_name, REDIS_CONF_FIELD)
            return

        updated = self.database_service.disable_appendonly(redis_conf)
        if updated == redis_conf:
            logger.info("appendonly is already disabled in %s.", secret_name)
            return

        self.cluster.patch_secret(self.namespace, secret_name, {REDIS_CONF_FIELD: updated})
        logger.info("Set appendonly to no in secret %s.", secret_name)

    def restore_redis(
        self,
        target: str = REDIS_DEPLOYMENT,
        label: str = DEFAULT_LABEL_KEY,
        file_location: str = DEFAULT_FILE_LOCATION,
        file_name: str = REDIS_BACKUP_FILE,
        secret_name: str = REDIS_SECRET_NAME,
    ):
        local_path = os.path.join(file_location, file_name)
        self._require_local_file(local_path)
        redis_secret = self._run_step(
            "read_redis_secret",
            self.credential_resolver.resolve_redis,
            self.namespace,
            secret_name,
        )
        exec_target = self._run_step("resolve_target", self.resolve_target, target, label)

        try:
            self._run_step("scale_down", self.scale_down)
            self._run_step(
                "prepare_cache",
                self.channel.execute,
                exec_target,
                self.database_service.redis_restore_prep_command(),
                stdin=self._auth_stdin(redis_secret["password"]),
            )
            self._run_step(
                "push_artifact",
                self.transfer_service.push,
                exec_target,
                local_path,
                posixpath.join(REDIS_DATA_DIR, REDIS_BACKUP_FILE),
            )
            self._run_step(
                "update_redis_config",
                self.update_redis_config,
                secret_name,
                redis_secret["redis_conf"],
            )
            self._run_step("restart_cache", self.cluster.delete_pod, exec_target)
        except BaseException:
            self._scale_up_after_failure()
            raise

        self._run_step("scale_up", self.scale_up)

    def restore_files(
        self,
        secret_name: str = STORAGE_SECRET_NAME,
        source: Optional[str] = None,
        **credentials,
    ):
        store = self._object_store(secret_name, credentials)
        source = source or os.path.join(DEFAULT_FILE_LOCATION, store.bucket_name)
        self._run_step("upload_tree", self.upload_tree, store, source)
        console.print(f"[green]'{source}' restored to bucket {store.bucket_name}.[/green]")

    def _workflow_handler(self, workflow: str):
        if workflow not in self.WORKFLOWS:
            raise CnvrgctlError(
                f"Unknown workflow `{workflow}`. Supported workflows: {', '.join(self.WORKFLOWS)}."
            )
        return getattr(self, workflow.replace("-", "_"))

    @staticmethod
    def _manifest_options(options: Dict[str, Any]) -> Dict[str, Any]:
        return {key: value for key, value in options.items() if key not in SECRET_OPTIONS}

    def run(self, workflow: str, **options) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            handler = self._workflow_handler(workflow)
            logger.info("Starting %s in namespace %s...", workflow, self.namespace)
            self.manifest_service.start_run(
                run_id=self.run_id,
                workflow=workflow,
                namespace=self.namespace,
                options=self._manifest_options(options),
            )

            handler(**options)

            console.print(f"[bold green]{workflow} completed.[/bold green]")
            logger.info("%s completed.", workflow)
            manifest_status = "success"
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            return exit_code
        except CnvrgctlError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            manifest_error = str(exc)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            manifest_error = str(exc)
            return exit_code
        finally:
            self.manifest_service.finalize(manifest_status, error=manifest_error)
            if manifest_status != "success" and self.workloads_scaled_down:
                logger.warning(
                    "Workloads %s in namespace %s were left scaled down. "
                    "Scale them up once the failure is resolved.",
                    ", ".join(self.workloads),
                    self.namespace,
                )
