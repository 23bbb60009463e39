"""Exec/tunnel target resolution."""

from cnvrgctl.errors import AmbiguousTargetError, NoMatchError
from cnvrgctl.errors_catalog import actionable_error
from cnvrgctl.models import ExecTarget


class TargetResolver:
    """Selects the running pod behind a deployment label."""

    def __init__(self, cluster, logger):
        self.cluster = cluster
        self.logger = logger

    def resolve(
        self,
        namespace: str,
        deployment_name: str,
        label_key: str,
        require_unique: bool = False,
    ) -> ExecTarget:
        selector = f"{label_key}={deployment_name}"
        pods = self.cluster.list_running_pods(namespace, selector)
        details = {"label_key": label_key, "deployment": deployment_name, "namespace": namespace}

        if not pods:
            raise NoMatchError(actionable_error("no_matching_target", **details))

        if len(pods) > 1:
            if require_unique:
                raise AmbiguousTargetError(
                    actionable_error("ambiguous_target", count=len(pods), **details)
                )
            self.logger.warning(
                "%s pods match %s in %s; using the first one (%s).",
                len(pods),
                selector,
                namespace,
                pods[0],
            )

        target = ExecTarget(namespace=namespace, pod_name=pods[0])
        self.logger.info("Resolved target pod %s", target)
        return target
