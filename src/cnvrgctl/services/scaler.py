"""Workload replica scaling for maintenance windows."""

import time
from typing import Dict

from cnvrgctl.constants import SCALE_POLL_INTERVAL
from cnvrgctl.errors import ConvergenceTimeoutError, ScaleError, TransportError
from cnvrgctl.errors_catalog import actionable_error
from cnvrgctl.models import ScaleTarget


class WorkloadScaler:
    """Drives the replica counts of an ordered list of deployments."""

    def __init__(self, cluster, logger, console):
        self.cluster = cluster
        self.logger = logger
        self.console = console

    def scale_to(self, scale_target: ScaleTarget) -> Dict[str, int]:
        """Applies ``desired_replicas`` to every workload, in list order.

        Stops at the first workload that cannot be read or written; workloads
        already scaled are left as they are.
        """
        applied: Dict[str, int] = {}
        namespace = scale_target.namespace

        for workload in scale_target.workload_names:
            try:
                current = self.cluster.get_scale(namespace, workload)
                previous = current.spec.replicas if current.spec else None
                replicas = self.cluster.set_scale(namespace, workload, scale_target.desired_replicas)
            except TransportError as exc:
                raise ScaleError(
                    f"{actionable_error('scale_failed', workload=workload, namespace=namespace)} "
                    f"Cause: {exc}",
                    workload=workload,
                ) from exc

            applied[workload] = replicas
            self.logger.info(
                "Scaled deployment %s from %s to %s replica(s).", workload, previous, replicas
            )
            self.console.print(f"[dim]scaled deployment {workload} to {replicas} replica(s).[/dim]")

        return applied

    def wait_for_termination(
        self,
        scale_target: ScaleTarget,
        timeout: float,
        poll_interval: float = SCALE_POLL_INTERVAL,
    ):
        """Polls each workload's pods until none are left or ``timeout`` elapses."""
        namespace = scale_target.namespace
        deadline = time.monotonic() + timeout
        self.console.print("[yellow]Waiting for pods to finish terminating...[/yellow]")

        for workload in scale_target.workload_names:
            try:
                selector = self.cluster.get_scale(namespace, workload).status.selector
            except TransportError as exc:
                raise ScaleError(
                    actionable_error("scale_failed", workload=workload, namespace=namespace),
                    workload=workload,
                ) from exc

            if not selector:
                self.logger.debug("Deployment %s reports no pod selector; skipping wait.", workload)
                continue

            while True:
                remaining = self.cluster.count_pods(namespace, selector)
                if remaining == 0:
                    self.logger.debug("All pods of %s terminated.", workload)
                    break
                if time.monotonic() >= deadline:
                    raise ConvergenceTimeoutError(
                        actionable_error("scale_timeout", workload=workload, timeout=timeout),
                        workload=workload,
                    )
                self.logger.debug("%s pod(s) of %s still present.", remaining, workload)
                time.sleep(poll_interval)

        self.console.print("[green]Application pods terminated.[/green]")
