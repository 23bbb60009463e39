"""Actionable error catalog for cnvrgctl."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "no_matching_target": {
        "what": "No running pod found for `{label_key}={deployment}` in namespace `{namespace}`.",
        "next": "Check the namespace, the `--label` key and the `--target` deployment name.",
    },
    "ambiguous_target": {
        "what": "{count} running pods match `{label_key}={deployment}` in namespace `{namespace}`.",
        "next": "Use a more specific `--label`/`--target` pair that selects exactly one pod.",
    },
    "secret_not_found": {
        "what": "Secret `{name}` could not be read in namespace `{namespace}`.",
        "next": "Check the namespace and `--secret-name`, or pass the credentials explicitly.",
    },
    "secret_missing_field": {
        "what": "Secret `{name}` is missing the `{field}` field.",
        "next": "Add the field to the secret or pass the credentials explicitly.",
    },
    "unsupported_storage_type": {
        "what": "Object storage type `{storage_type}` is not supported.",
        "next": "Use `minio` (S3-compatible) or `aws` (S3-native).",
    },
    "scale_failed": {
        "what": "Could not scale deployment `{workload}` in namespace `{namespace}`.",
        "next": "Check the namespace is correct and the deployment exists.",
    },
    "scale_timeout": {
        "what": "Pods of `{workload}` were still running after {timeout}s.",
        "next": "Inspect the pods with `kubectl get pods` or raise `--scale-timeout`.",
    },
    "tunnel_not_ready": {
        "what": "Port-forward to {pod}:{port} was not ready after {timeout}s.",
        "next": "Check connectivity to the cluster or raise `--tunnel-timeout`.",
    },
    "local_file_not_found": {
        "what": "Local backup file not found: {path}",
        "next": "Check `--file-location` and `--file-name`.",
    },
}


def actionable_error(code: str, **kwargs) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
