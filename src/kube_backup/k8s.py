from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import base64
import binascii
import logging
import os
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.stream import stream

from .errors import EXIT_OPERATIONAL_ERROR, KubeBackupError

SERVICEACCOUNT_NAMESPACE_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
DEFAULT_NAMESPACE = "default"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesLookupError(KubeBackupError):
    """Raised when a pod, secret or exec call against the cluster fails."""


class KubernetesAuthenticationError(KubeBackupError):
    """Raised when Kubernetes authentication configuration fails."""

    exit_code = EXIT_OPERATIONAL_ERROR


def write_kubeconfig_content(kubeconfig_content: str, path: Path) -> str:
    path = path.expanduser()
    if path.exists():
        raise FileExistsError(f"kubeconfig file '{path}' already exists and will not be overwritten")
    path.parent.mkdir(parents=True, exist_ok=True)
    # O_EXCL so a file created between the check and the write is never clobbered.
    descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(descriptor, "w") as handle:
        handle.write(kubeconfig_content)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster and expanded is None:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster and expanded is None,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


def current_namespace(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None = None,
    context: str | None = None,
) -> str:
    """Namespace of the running context: service account first, then kubeconfig, then ``default``."""
    if in_cluster and kubeconfig_path is None and SERVICEACCOUNT_NAMESPACE_PATH.is_file():
        namespace = SERVICEACCOUNT_NAMESPACE_PATH.read_text(encoding="utf-8").strip()
        if namespace:
            return namespace

    try:
        contexts, active_context = config.list_kube_config_contexts(
            config_file=_expand_kubeconfig_path(kubeconfig_path)
        )
    except Exception:  # pylint: disable=broad-except
        contexts, active_context = [], None

    if context:
        active_context = next((item for item in contexts or [] if item.get("name") == context), None)

    namespace = ((active_context or {}).get("context") or {}).get("namespace")
    if namespace:
        return namespace

    logger.info("No namespace specified and no current kubectl context, assuming '%s' namespace", DEFAULT_NAMESPACE)
    return DEFAULT_NAMESPACE


def read_secret_data(
    clients: KubernetesClients,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, str] | None:
    """Return the decoded data of a secret, or ``None`` when the secret does not exist."""
    try:
        secret = clients.core_api.read_namespaced_secret(
            name=name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesLookupError(
            _format_api_exception_message(
                operation=f"read secret '{namespace}/{name}'",
                hint="Verify RBAC allows get on secrets in this namespace.",
                error=error,
            )
        ) from error

    decoded: dict[str, str] = {}
    for key, value in (secret.data or {}).items():
        try:
            decoded[key] = base64.b64decode(value).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as error:
            raise KubernetesLookupError(f"Secret '{namespace}/{name}' has an undecodable value for key '{key}'") from error
    return decoded


def apply_secret(
    clients: KubernetesClients,
    *,
    namespace: str,
    body: client.V1Secret,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> str:
    """Create the secret, or replace it when one with the same name exists. Returns the action taken."""
    name = body.metadata.name
    hint = "Verify RBAC allows get, create and update on secrets in this namespace."
    try:
        clients.core_api.read_namespaced_secret(name=name, namespace=namespace, _request_timeout=request_timeout_seconds)
    except ApiException as error:
        if error.status != 404:
            raise KubernetesLookupError(
                _format_api_exception_message(operation=f"read secret '{namespace}/{name}'", hint=hint, error=error)
            ) from error
        _safe_kubernetes_call(
            operation=f"create secret '{namespace}/{name}'",
            hint=hint,
            func=lambda: clients.core_api.create_namespaced_secret(
                namespace=namespace,
                body=body,
                _request_timeout=request_timeout_seconds,
            ),
        )
        return "created"

    _safe_kubernetes_call(
        operation=f"replace secret '{namespace}/{name}'",
        hint=hint,
        func=lambda: clients.core_api.replace_namespaced_secret(
            name=name,
            namespace=namespace,
            body=body,
            _request_timeout=request_timeout_seconds,
        ),
    )
    return "replaced"


def list_namespace_names(
    clients: KubernetesClients,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    namespaces = _safe_kubernetes_call(
        operation="list namespaces",
        hint="Verify RBAC allows list on namespaces.",
        func=lambda: clients.core_api.list_namespace(_request_timeout=request_timeout_seconds).items,
    )
    return sorted(item.metadata.name for item in namespaces)


def list_pods(
    clients: KubernetesClients,
    *,
    namespace: str,
    selector: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1Pod]:
    return _safe_kubernetes_call(
        operation=f"list Pods matching '{selector}' in namespace '{namespace}'",
        hint="Check the selector syntax and RBAC verbs for pods.",
        func=lambda: clients.core_api.list_namespaced_pod(
            namespace=namespace,
            label_selector=selector,
            _request_timeout=request_timeout_seconds,
        ).items,
    )


def read_pod(
    clients: KubernetesClients,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1Pod | None:
    try:
        return clients.core_api.read_namespaced_pod(
            name=name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesLookupError(
            _format_api_exception_message(
                operation=f"read Pod '{namespace}/{name}'",
                hint="Verify RBAC allows get on pods in this namespace.",
                error=error,
            )
        ) from error


def exec_in_container(
    clients: KubernetesClients,
    *,
    namespace: str,
    pod: str,
    container: str,
    command: list[str],
) -> str:
    """Run a short command in a container and return its stdout as text."""
    return _safe_kubernetes_call(
        operation=f"exec in container '{container}' of Pod '{namespace}/{pod}'",
        hint="Verify RBAC allows create on pods/exec and the container has a shell.",
        func=lambda: stream(
            clients.core_api.connect_get_namespaced_pod_exec,
            pod,
            namespace,
            container=container,
            command=command,
            stderr=False,
            stdin=False,
            stdout=True,
            tty=False,
        ),
    )


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesLookupError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesLookupError(f"Kubernetes request failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes request failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
