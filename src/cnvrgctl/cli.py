import logging

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_FILE_LOCATION,
    DEFAULT_LABEL_KEY,
    DEFAULT_NAMESPACE,
    DEFAULT_SCALE_TIMEOUT,
    DEFAULT_TUNNEL_TIMEOUT,
    DEFAULT_WORKLOADS,
    POSTGRES_BACKUP_FILE,
    POSTGRES_DEPLOYMENT,
    REDIS_BACKUP_FILE,
    REDIS_DEPLOYMENT,
    REDIS_SECRET_NAME,
    STORAGE_SECRET_NAME,
)
from .core import BackupOrchestrator, CnvrgctlError
from .services.cluster import ClusterClient
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("cnvrgctl")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _run_workflow(ctx: click.Context, workflow: str, **options):
    settings = ctx.obj
    try:
        cluster = ClusterClient.connect(
            logging.getLogger("cnvrgctl"),
            kubeconfig=settings["kubeconfig"],
            context=settings["context"],
        )
        orchestrator = BackupOrchestrator(
            cluster,
            namespace=settings["namespace"],
            workloads=settings["workloads"],
            scale_timeout=settings["scale_timeout"],
            tunnel_timeout=settings["tunnel_timeout"],
            manifest_file=settings["manifest_file"],
            require_unique_target=settings["require_unique_target"],
        )
    except CnvrgctlError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(orchestrator.run(workflow, **options))


def target_options(deployment: str):
    def decorator(func):
        func = click.option(
            "-l",
            "--label",
            "--selector",
            "label",
            default=DEFAULT_LABEL_KEY,
            show_default=True,
            help="Key of the deployment label used to find the pod, e.g. app.kubernetes.io/name.",
        )(func)
        func = click.option(
            "-t",
            "--target",
            default=deployment,
            show_default=True,
            help="Name of the deployment whose pod is targeted.",
        )(func)
        return func

    return decorator


def storage_options(func):
    options = [
        click.option(
            "--secret-name",
            default=STORAGE_SECRET_NAME,
            show_default=True,
            help="Secret holding the object storage credentials.",
        ),
        click.option("-u", "--endpoint", "--minio-url", "endpoint", help="Object storage endpoint URL."),
        click.option("-a", "--access-key", help="Object storage access key."),
        click.option("-k", "--secret-key", help="Object storage secret key."),
        click.option("--session-token", help="Object storage session token."),
        click.option("-b", "--bucket", help="Bucket name."),
        click.option("--region", help="Bucket region (S3-native storage)."),
        click.option(
            "--storage-type",
            type=click.Choice(["minio", "aws"]),
            help="Storage type: minio (S3-compatible) or aws (S3-native).",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .cnvrgctl.yml or ~/.cnvrgctl.yaml if present.",
)
@click.option("-n", "--namespace", default=None, help="Namespace of the application (default: default).")
@click.option("--kubeconfig", type=click.Path(), default=None, help="Path to the kubeconfig file.")
@click.option("--context", default=None, help="Kubeconfig context to use.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option("--manifest-file", type=click.Path(), help="Write a JSON run manifest to this path.")
@click.option(
    "--scale-timeout",
    type=float,
    default=None,
    help="Seconds to wait for scaled-down pods to terminate (default: 120).",
)
@click.option(
    "--tunnel-timeout",
    type=float,
    default=None,
    help="Seconds to wait for a port-forward to become ready (default: 30).",
)
@click.option(
    "--require-unique-target",
    is_flag=True,
    default=False,
    help="Fail when more than one running pod matches the target label.",
)
@click.pass_context
def main(
    ctx,
    config,
    namespace,
    kubeconfig,
    context,
    verbose,
    log_file,
    manifest_file,
    scale_timeout,
    tunnel_timeout,
    require_unique_target,
):
    """Back up and restore the database, cache and files of a cnvrg.io deployment."""
    try:
        config_values = ConfigLoader().load(config)
    except CnvrgctlError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    _configure_logging(verbose, log_file)

    ctx.obj = {
        "namespace": _resolve_option(namespace, config_values, "namespace", default=DEFAULT_NAMESPACE),
        "kubeconfig": _resolve_option(kubeconfig, config_values, "kubeconfig"),
        "context": _resolve_option(context, config_values, "context"),
        "manifest_file": _resolve_option(manifest_file, config_values, "manifest_file"),
        "workloads": tuple(_resolve_option(None, config_values, "workloads", default=DEFAULT_WORKLOADS)),
        "scale_timeout": float(
            _resolve_option(scale_timeout, config_values, "scale_timeout", default=DEFAULT_SCALE_TIMEOUT)
        ),
        "tunnel_timeout": float(
            _resolve_option(tunnel_timeout, config_values, "tunnel_timeout", default=DEFAULT_TUNNEL_TIMEOUT)
        ),
        "require_unique_target": require_unique_target,
    }


@main.group()
def backup():
    """Back up the database, cache or storage bucket."""


@main.group()
def restore():
    """Restore the database, cache or storage bucket."""


@backup.command("postgres")
@target_options(POSTGRES_DEPLOYMENT)
@click.option(
    "-f",
    "--file-location",
    default=DEFAULT_FILE_LOCATION,
    show_default=True,
    help="Local directory to save the backup file.",
)
@click.option("--file-name", default=POSTGRES_BACKUP_FILE, show_default=True, help="Name of the backup file.")
@click.option(
    "--disable-scale",
    is_flag=True,
    default=False,
    help="Do not scale the application workloads to 0 during the backup.",
)
@click.pass_context
def backup_postgres(ctx, target, label, file_location, file_name, disable_scale):
    """Dump the PostgreSQL database and copy it locally."""
    _run_workflow(
        ctx,
        "backup-postgres",
        target=target,
        label=label,
        file_location=file_location,
        file_name=file_name,
        disable_scale=disable_scale,
    )


@backup.command("redis")
@target_options(REDIS_DEPLOYMENT)
@click.option(
    "-f",
    "--file-location",
    default=DEFAULT_FILE_LOCATION,
    show_default=True,
    help="Local directory to save the backup file.",
)
@click.option("--file-name", default=REDIS_BACKUP_FILE, show_default=True, help="Name of the backup file.")
@click.option(
    "--secret-name",
    default=REDIS_SECRET_NAME,
    show_default=True,
    help="Secret holding the Redis credentials.",
)
@click.option(
    "--disable-scale",
    is_flag=True,
    default=False,
    help="Do not scale the application workloads to 0 during the backup.",
)
@click.pass_context
def backup_redis(ctx, target, label, file_location, file_name, secret_name, disable_scale):
    """Save a Redis snapshot and copy it locally."""
    _run_workflow(
        ctx,
        "backup-redis",
        target=target,
        label=label,
        file_location=file_location,
        file_name=file_name,
        secret_name=secret_name,
        disable_scale=disable_scale,
    )


@backup.command("files")
@storage_options
@click.option(
    "-d",
    "--destination",
    type=click.Path(),
    help="Local directory for the bucket contents (default: ./<bucket>).",
)
@click.pass_context
def backup_files(ctx, destination, **credentials):
    """Download the storage bucket to a local directory."""
    _run_workflow(ctx, "backup-files", destination=destination, **credentials)


@restore.command("postgres")
@target_options(POSTGRES_DEPLOYMENT)
@click.option(
    "-f",
    "--file-location",
    default=DEFAULT_FILE_LOCATION,
    show_default=True,
    help="Local directory of the backup file.",
)
@click.option("--file-name", default=POSTGRES_BACKUP_FILE, show_default=True, help="Name of the backup file.")
@click.pass_context
def restore_postgres(ctx, target, label, file_location, file_name):
    """Recreate the PostgreSQL database from a local backup."""
    _run_workflow(
        ctx,
        "restore-postgres",
        target=target,
        label=label,
        file_location=file_location,
        file_name=file_name,
    )


@restore.command("redis")
@target_options(REDIS_DEPLOYMENT)
@click.option(
    "-f",
    "--file-location",
    default=DEFAULT_FILE_LOCATION,
    show_default=True,
    help="Local directory of the backup file.",
)
@click.option("--file-name", default=REDIS_BACKUP_FILE, show_default=True, help="Name of the backup file.")
@click.option(
    "--secret-name",
    default=REDIS_SECRET_NAME,
    show_default=True,
    help="Secret holding the Redis credentials.",
)
@click.pass_context
def restore_redis(ctx, target, label, file_location, file_name, secret_name):
    """Load a local Redis snapshot and restart Redis."""
    _run_workflow(
        ctx,
        "restore-redis",
        target=target,
        label=label,
        file_location=file_location,
        file_name=file_name,
        secret_name=secret_name,
    )


@restore.command("files")
@storage_options
@click.option(
    "-s",
    "--source",
    type=click.Path(),
    help="Local directory to upload (default: ./<bucket>).",
)
@click.pass_context
def restore_files(ctx, source, **credentials):
    """Upload a local directory to the storage bucket."""
    _run_workflow(ctx, "restore-files", source=source, **credentials)


if __name__ == "__main__":
    main()
