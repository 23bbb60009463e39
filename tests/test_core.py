import json
from types import SimpleNamespace

import pytest

from cnvrgctl.core import BackupOrchestrator
from cnvrgctl.errors import RemoteExecutionError, TransportError
from cnvrgctl.models import BackendKind, ExecResult, ObjectStoreTarget, SyncResult

WORKLOADS = ("app", "sidekiq", "cnvrg-operator")

MINIO_SECRET = {
    "CNVRG_STORAGE_ENDPOINT": "http://minio.cnvrg.svc:80",
    "CNVRG_STORAGE_ACCESS_KEY": "access",
    "CNVRG_STORAGE_SECRET_KEY": "secret",
    "CNVRG_STORAGE_BUCKET": "cnvrg-storage",
    "CNVRG_STORAGE_TYPE": "minio",
}


class FakeCluster:
    def __init__(self, events, secrets=None, pods=("postgres-0",)):
        self.events = events
        self.secrets = dict(secrets or {})
        self.pods = list(pods)
        self.replicas = {name: 1 for name in WORKLOADS}

    def get_scale(self, namespace, deployment):
        return SimpleNamespace(
            spec=SimpleNamespace(replicas=self.replicas[deployment]),
            status=SimpleNamespace(selector=f"app={deployment}"),
        )

    def set_scale(self, namespace, deployment, replicas):
        self.events.append(("scale", deployment, replicas))
        self.replicas[deployment] = replicas
        return replicas

    def count_pods(self, namespace, selector):
        return 0

    def list_running_pods(self, namespace, selector):
        return list(self.pods)

    def read_secret(self, namespace, name):
        if name not in self.secrets:
            raise TransportError(f"Reading secret {namespace}/{name} failed: 404 Not Found")
        return dict(self.secrets[name])

    def patch_secret(self, namespace, name, values):
        self.events.append(("patch_secret", name, values))

    def delete_pod(self, target):
        self.events.append(("delete_pod", target.pod_name))


class FakePod:
    """Answers the commands the workflows run inside the database and cache pods."""

    def __init__(self, events):
        self.events = events
        self.files = {}

    def execute(self, target, argv, stdin=None, stdout_sink=None, check=True):
        script = argv[2] if argv[:2] == ["sh", "-c"] else " ".join(argv)
        self.events.append(("exec", script.split(";")[-1].strip().split()[0]))

        if argv[0] == "cat":
            data = self.files.get(argv[1])
            if data is None:
                raise RemoteExecutionError(f"cat: {argv[1]}: No such file", exit_code=1)
            stdout_sink(data)
        elif script.startswith("head -c"):
            size = int(script.split()[2])
            self.files[script.split("> ", 1)[1]] = stdin.read(size)
        elif "pg_dump" in script:
            self.files[script.split("-f ", 1)[1]] = b"PGDMP custom archive"
        elif "pg_restore" in script:
            if not self.files.get(script.rsplit(" ", 1)[1]):
                raise RemoteExecutionError(
                    "pg_restore: error: input file is too short", exit_code=1
                )
        elif "POSTGRESQL_PASSWORD" in script:
            return ExecResult(stdout=b"pg-password", stderr=b"", exit_code=0)
        elif "redis-cli" in script:
            assert stdin.read() == b"redis-pw\n"
            if "redis-cli save" in script:
                self.files["/data/dump.rdb"] = b"REDIS0009"
        return ExecResult(stdout=b"", stderr=b"", exit_code=0)


class FakeTunnel:
    local_port = 61000

    def __init__(self, events):
        self.events = events

    def __enter__(self):
        self.events.append(("tunnel", "open"))
        return self

    def __exit__(self, exc_type, exc, tb):
        self.events.append(("tunnel", "close"))
        return False

    def wait_until_ready(self, timeout):
        return self.local_port


def _record_recreate(orchestrator, events):
    def quiesce_and_recreate(tunnel, database_name, password=None):
        events.append(("recreate", database_name, password))

    orchestrator.database_service.quiesce_and_recreate = quiesce_and_recreate


class FakeStore:
    bucket_name = "cnvrg-storage"

    def __init__(self, events):
        self.events = events

    def verify(self):
        self.events.append(("verify_bucket",))


def _build(events, tmp_path, secrets=None, manifest=False):
    cluster = FakeCluster(events, secrets=secrets)
    orchestrator = BackupOrchestrator(
        cluster,
        namespace="cnvrg",
        workloads=WORKLOADS,
        scale_timeout=5,
        tunnel_timeout=5,
        manifest_file=str(tmp_path / "manifest.json") if manifest else None,
        tunnel_factory=lambda target, port: FakeTunnel(events),
        store_factory=lambda target: FakeStore(events),
    )
    pod = FakePod(events)
    orchestrator.channel = pod
    orchestrator.transfer_service.channel = pod
    return orchestrator, pod


def _scale_events(events):
    return [event for event in events if event[0] == "scale"]


def test_backup_postgres_end_to_end(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path, manifest=True)

    exit_code = orchestrator.run("backup-postgres", file_location=str(tmp_path / "backups"))

    assert exit_code == 0
    assert (tmp_path / "backups" / "cnvrg-db-backup.sql").read_bytes() == b"PGDMP custom archive"
    assert _scale_events(events) == [("scale", name, 0) for name in WORKLOADS] + [
        ("scale", name, 1) for name in WORKLOADS
    ]
    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "success"
    assert [step["name"] for step in manifest["steps"]] == [
        "scale_down",
        "resolve_target",
        "dump_database",
        "pull_artifact",
        "scale_up",
    ]


def test_backup_postgres_without_scaling(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path)

    assert orchestrator.run("backup-postgres", file_location=str(tmp_path), disable_scale=True) == 0
    assert _scale_events(events) == []


def test_backup_postgres_does_not_scale_up_after_failed_pull(tmp_path):
    events = []
    orchestrator, pod = _build(events, tmp_path)
    pod.files = {}

    def broken_pull(*_args, **_kwargs):
        raise RemoteExecutionError("cat: No such file", exit_code=1)

    orchestrator.transfer_service.pull = broken_pull

    assert orchestrator.run("backup-postgres", file_location=str(tmp_path)) == 1
    assert _scale_events(events) == [("scale", name, 0) for name in WORKLOADS]
    assert orchestrator.workloads_scaled_down is True


def test_backup_redis_end_to_end(tmp_path):
    events = []
    secrets = {"redis-creds": {"CNVRG_REDIS_PASSWORD": "redis-pw", "redis.conf": "appendonly yes\n"}}
    orchestrator, _ = _build(events, tmp_path, secrets=secrets)

    assert orchestrator.run("backup-redis", file_location=str(tmp_path)) == 0
    assert (tmp_path / "dump.rdb").read_bytes() == b"REDIS0009"
    assert _scale_events(events)[-1] == ("scale", "cnvrg-operator", 1)


def test_backup_files_credential_failure_happens_before_scaling(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path, manifest=True)

    assert orchestrator.run("backup-files") == 1
    assert _scale_events(events) == []
    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["steps"][0]["name"] == "resolve_credentials"
    assert manifest["steps"][0]["status"] == "failed"


def test_backup_files_downloads_bucket_between_scalings(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path, secrets={"cp-object-storage": MINIO_SECRET})
    synced = {}

    def fake_sync_down(store, destination):
        events.append(("sync_down", destination))
        synced["destination"] = destination
        return SyncResult(succeeded=True, transferred=["a", "b"])

    orchestrator.synchronizer.sync_down = fake_sync_down

    assert orchestrator.run("backup-files", destination=str(tmp_path / "bucket")) == 0
    names = [event[0] for event in events]
    assert names.index("verify_bucket") < names.index("scale") < names.index("sync_down")
    assert events[-1] == ("scale", "cnvrg-operator", 1)
    assert synced["destination"] == str(tmp_path / "bucket")


def test_backup_files_failed_sync_keeps_workloads_down(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path, secrets={"cp-object-storage": MINIO_SECRET})
    orchestrator.synchronizer.sync_down = lambda store, destination: SyncResult(
        succeeded=False, transferred=["a"], error=TransportError("connection reset")
    )

    assert orchestrator.run("backup-files", destination=str(tmp_path / "bucket")) == 1
    assert ("scale", "app", 1) not in events


def test_restore_postgres_zero_length_file_fails_after_recreate(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path)
    _record_recreate(orchestrator, events)
    (tmp_path / "cnvrg-db-backup.sql").write_bytes(b"")

    exit_code = orchestrator.run("restore-postgres", file_location=str(tmp_path))

    assert exit_code == 1
    names = [event[0] for event in events]
    assert ("recreate", "cnvrg_production", "pg-password") in events
    assert names.index("recreate") < len(names) - 1
    assert ("tunnel", "close") in events
    assert ("exec", "pg_restore") in events
    assert _scale_events(events)[-len(WORKLOADS):] == [("scale", name, 1) for name in WORKLOADS]
    assert orchestrator.workloads_scaled_down is False


def test_restore_postgres_end_to_end(tmp_path):
    events = []
    orchestrator, pod = _build(events, tmp_path)
    _record_recreate(orchestrator, events)
    (tmp_path / "cnvrg-db-backup.sql").write_bytes(b"PGDMP custom archive")

    assert orchestrator.run("restore-postgres", file_location=str(tmp_path)) == 0
    assert pod.files["/opt/app-root/src/cnvrg-db-backup.sql"] == b"PGDMP custom archive"
    names = [event[0] for event in events]
    assert names.index("tunnel") < names.index("recreate")
    assert events.index(("tunnel", "close")) < events.index(("exec", "pg_restore"))


def test_restore_postgres_missing_file_fails_before_scaling(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path)

    assert orchestrator.run("restore-postgres", file_location=str(tmp_path)) == 1
    assert _scale_events(events) == []


def test_restore_redis_end_to_end(tmp_path):
    events = []
    secrets = {"redis-creds": {"CNVRG_REDIS_PASSWORD": "redis-pw", "redis.conf": "appendonly yes\n"}}
    orchestrator, pod = _build(events, tmp_path, secrets=secrets)
    (tmp_path / "dump.rdb").write_bytes(b"REDIS0009 snapshot")

    assert orchestrator.run("restore-redis", file_location=str(tmp_path)) == 0
    assert pod.files["/data/dump.rdb"] == b"REDIS0009 snapshot"
    assert ("patch_secret", "redis-creds", {"redis.conf": "appendonly no\n"}) in events
    names = [event[0] for event in events]
    assert names.index("patch_secret") < names.index("delete_pod") < len(names) - len(WORKLOADS)
    assert _scale_events(events)[-1] == ("scale", "cnvrg-operator", 1)


def test_restore_files_uploads_without_scaling(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path)
    uploaded = {}

    def fake_sync_up(store, source):
        uploaded["source"] = source
        return SyncResult(succeeded=True, transferred=["x"])

    orchestrator.synchronizer.sync_up = fake_sync_up

    exit_code = orchestrator.run(
        "restore-files",
        source=str(tmp_path),
        endpoint="http://minio:9000",
        access_key="a",
        secret_key="s",
        bucket="cnvrg-storage",
        storage_type="minio",
    )

    assert exit_code == 0
    assert uploaded["source"] == str(tmp_path)
    assert _scale_events(events) == []


def test_manifest_never_records_secret_options(tmp_path):
    events = []
    orchestrator, _ = _build(events, tmp_path, manifest=True)
    orchestrator.synchronizer.sync_up = lambda store, source: SyncResult(succeeded=True)

    orchestrator.run(
        "restore-files",
        source=str(tmp_path),
        endpoint="http://minio:9000",
        access_key="a",
        secret_key="s",
        bucket="cnvrg-storage",
        storage_type="minio",
    )

    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert "secret_key" not in manifest["options"]
    assert "access_key" not in manifest["options"]
    assert manifest["options"]["bucket"] == "cnvrg-storage"


def test_unknown_workflow_returns_error_code(tmp_path):
    orchestrator, _ = _build([], tmp_path)

    assert orchestrator.run("backup-everything") == 1


@pytest.mark.parametrize("kind", [BackendKind.S3_COMPATIBLE, BackendKind.S3_NATIVE])
def test_object_store_target_repr_hides_secrets(kind):
    target = ObjectStoreTarget(
        endpoint_url="http://minio:9000",
        access_key="AKIA",
        secret_key="hunter2",
        bucket_name="b",
        backend_kind=kind,
        session_token="token",
    )

    assert "hunter2" not in repr(target)
    assert "token" not in repr(target)
