"""Kubernetes control-plane access for cnvrgctl."""

import base64
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward, stream

from cnvrgctl.errors import TransportError
from cnvrgctl.models import ExecTarget


class ClusterClient:
    """Explicit handle on one cluster, passed to every component that needs it.

    All API failures are raised as ``TransportError`` with the operation and
    object prepended; callers that need to react to a missing object can read
    the HTTP status from ``exc.__cause__``.
    """

    def __init__(self, api_client: client.ApiClient, logger):
        self.api_client = api_client
        self.logger = logger
        self.apps_v1 = client.AppsV1Api(api_client)
        self.core_v1 = client.CoreV1Api(api_client)

    @classmethod
    def connect(cls, logger, kubeconfig: Optional[str] = None, context: Optional[str] = None):
        try:
            api_client = config.new_client_from_config(config_file=kubeconfig, context=context)
            logger.debug("Loaded kubeconfig (context: %s)", context or "<current>")
        except (config.ConfigException, OSError) as kube_exc:
            if kubeconfig or context:
                raise TransportError(
                    f"Could not load kubeconfig {kubeconfig or '<default>'}: {kube_exc}"
                ) from kube_exc
            configuration = client.Configuration()
            try:
                config.load_incluster_config(client_configuration=configuration)
            except config.ConfigException as exc:
                raise TransportError(
                    "Cannot load Kubernetes configuration from kubeconfig or in-cluster "
                    f"service account: {exc}"
                ) from exc
            api_client = client.ApiClient(configuration)
            logger.debug("Loaded in-cluster Kubernetes configuration")
        return cls(api_client, logger)

    @staticmethod
    def _describe(exc: ApiException) -> str:
        return f"{exc.status} {exc.reason}".strip()

    def get_scale(self, namespace: str, deployment: str):
        try:
            return self.apps_v1.read_namespaced_deployment_scale(deployment, namespace)
        except ApiException as exc:
            raise TransportError(
                f"Reading scale of deployment {namespace}/{deployment} failed: {self._describe(exc)}"
            ) from exc

    def set_scale(self, namespace: str, deployment: str, replicas: int) -> int:
        body = {"spec": {"replicas": replicas}}
        try:
            scale = self.apps_v1.patch_namespaced_deployment_scale(deployment, namespace, body)
        except ApiException as exc:
            raise TransportError(
                f"Scaling deployment {namespace}/{deployment} failed: {self._describe(exc)}"
            ) from exc
        return scale.spec.replicas if scale.spec and scale.spec.replicas is not None else replicas

    def count_pods(self, namespace: str, label_selector: str) -> int:
        try:
            pods = self.core_v1.list_namespaced_pod(
                namespace,
                label_selector=label_selector,
                field_selector="status.phase!=Failed,status.phase!=Succeeded",
            )
        except ApiException as exc:
            raise TransportError(
                f"Listing pods for '{label_selector}' in {namespace} failed: {self._describe(exc)}"
            ) from exc
        return len(pods.items)

    def list_running_pods(self, namespace: str, label_selector: str) -> List[str]:
        try:
            pods = self.core_v1.list_namespaced_pod(
                namespace,
                label_selector=label_selector,
                field_selector="status.phase=Running",
            )
        except ApiException as exc:
            raise TransportError(
                f"Listing pods for '{label_selector}' in {namespace} failed: {self._describe(exc)}"
            ) from exc
        return [pod.metadata.name for pod in pods.items]

    def delete_pod(self, target: ExecTarget):
        try:
            self.core_v1.delete_namespaced_pod(target.pod_name, target.namespace)
        except ApiException as exc:
            raise TransportError(f"Deleting pod {target} failed: {self._describe(exc)}") from exc

    def read_secret(self, namespace: str, name: str) -> Dict[str, str]:
        try:
            secret = self.core_v1.read_namespaced_secret(name, namespace)
        except ApiException as exc:
            raise TransportError(
                f"Reading secret {namespace}/{name} failed: {self._describe(exc)}"
            ) from exc

        decoded: Dict[str, str] = {}
        for key, value in (secret.data or {}).items():
            decoded[key] = base64.b64decode(value).decode("utf-8")
        return decoded

    def patch_secret(self, namespace: str, name: str, values: Dict[str, str]):
        body = {"stringData": values}
        try:
            self.core_v1.patch_namespaced_secret(name, namespace, body)
        except ApiException as exc:
            raise TransportError(
                f"Updating secret {namespace}/{name} failed: {self._describe(exc)}"
            ) from exc

    def _stream_api(self) -> client.CoreV1Api:
        # stream() swaps the request method of the api client it is given,
        # so every websocket session gets its own ApiClient.
        return client.CoreV1Api(client.ApiClient(self.api_client.configuration))

    def open_exec(self, target: ExecTarget, argv: List[str], stdin: bool = False):
        kwargs = {
            "command": argv,
            "stdin": stdin,
            "stdout": True,
            "stderr": True,
            "tty": False,
            "binary": True,
            "_preload_content": False,
        }
        if target.container_name:
            kwargs["container"] = target.container_name

        try:
            return stream(
                self._stream_api().connect_get_namespaced_pod_exec,
                target.pod_name,
                target.namespace,
                **kwargs,
            )
        except ApiException as exc:
            raise TransportError(f"Opening exec session on {target} failed: {self._describe(exc)}") from exc
        except Exception as exc:
            raise TransportError(f"Opening exec session on {target} failed: {exc}") from exc

    def open_port_forward(self, target: ExecTarget, remote_port: int):
        try:
            return portforward(
                self._stream_api().connect_get_namespaced_pod_portforward,
                target.pod_name,
                target.namespace,
                ports=str(remote_port),
            )
        except ApiException as exc:
            raise TransportError(
                f"Opening port-forward to {target}:{remote_port} failed: {self._describe(exc)}"
            ) from exc
        except Exception as exc:
            raise TransportError(f"Opening port-forward to {target}:{remote_port} failed: {exc}") from exc
