from __future__ import annotations

import logging

from kubernetes import client

from .errors import EXIT_NO_PODS_FOUND, InvalidInvocationError, KubeBackupError
from .k8s import KubernetesClients, list_pods, read_pod
from .models import ResolvedTarget

logger = logging.getLogger(__name__)


class TargetResolutionError(KubeBackupError):
    """Raised when the pod or container to back up cannot be used."""


class AmbiguousSelectorError(TargetResolutionError):
    pass


class NoPodsFoundError(TargetResolutionError):
    exit_code = EXIT_NO_PODS_FOUND


def resolve_target(
    clients: KubernetesClients,
    *,
    namespace: str,
    pod: str | None,
    selector: str | None,
    container: str | None,
) -> ResolvedTarget:
    if pod and selector:
        raise InvalidInvocationError("Specify either a pod name or a selector, not both")
    if not pod and not selector:
        raise InvalidInvocationError("Must specify a pod name or a selector")

    if selector:
        pod_object = _select_single_pod(clients, namespace=namespace, selector=selector)
    else:
        pod_object = read_pod(clients, namespace=namespace, name=pod)
        if pod_object is None:
            raise TargetResolutionError(f"Pod '{pod}' not found in namespace '{namespace}'")

    pod_name = pod_object.metadata.name
    container_name = _select_container(pod_object, container)
    _require_container_ready(pod_object, container_name)
    return ResolvedTarget(namespace=namespace, pod=pod_name, container=container_name)


def _select_single_pod(clients: KubernetesClients, *, namespace: str, selector: str) -> client.V1Pod:
    pods = list_pods(clients, namespace=namespace, selector=selector)
    if not pods:
        raise NoPodsFoundError(f"No pods found matching selector '{selector}' in namespace '{namespace}'")
    if len(pods) > 1:
        names = ", ".join(sorted(item.metadata.name for item in pods))
        raise AmbiguousSelectorError(
            f"Selector '{selector}' matched {len(pods)} pods in namespace '{namespace}' ({names}); "
            "it must match exactly one"
        )
    logger.info("Selector '%s' matched pod '%s'", selector, pods[0].metadata.name)
    return pods[0]


def _select_container(pod: client.V1Pod, container: str | None) -> str:
    names = [item.name for item in (pod.spec.containers if pod.spec else None) or []]
    if not names:
        raise TargetResolutionError(f"Pod '{pod.metadata.name}' has no containers")

    if not container:
        logger.info(
            "No container specified, using first container '%s' of pod '%s'",
            names[0],
            pod.metadata.name,
        )
        return names[0]

    if container not in names:
        raise TargetResolutionError(f"Container '{container}' not found in pod '{pod.metadata.name}'")
    return container


def _require_container_ready(pod: client.V1Pod, container: str) -> None:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    for status in statuses:
        if status.name == container and status.ready is True:
            return
    raise TargetResolutionError(f"Container '{container}' in pod '{pod.metadata.name}' is not ready")
