from __future__ import annotations

from pathlib import Path
import logging
from typing import Callable, Mapping, Optional

import yaml

from .config import BackupConfig, ToolConfig
from .errors import EXIT_OPERATIONAL_ERROR, KubeBackupError
from .k8s import (
    KubernetesClients,
    KubernetesLookupError,
    current_namespace,
    load_kubernetes_clients,
    read_secret_data,
    write_kubeconfig_content,
)
from .models import ResolvedSecrets

KUBECONFIG_KEY = "kubeconfig"
AWS_ACCESS_KEY_ID_KEY = "AWS_ACCESS_KEY_ID"
AWS_SECRET_ACCESS_KEY_KEY = "AWS_SECRET_ACCESS_KEY"
S3_BUCKET_KEY = "S3_BUCKET"
SLACK_WEBHOOK_KEY = "SLACK_WEBHOOK"

logger = logging.getLogger(__name__)

ClientsLoader = Callable[[Optional[str]], KubernetesClients]


class SecretResolutionError(KubeBackupError):
    exit_code = EXIT_OPERATIONAL_ERROR


def default_clients_loader(tools: ToolConfig) -> ClientsLoader:
    def _load(kubeconfig_path: str | None) -> KubernetesClients:
        return load_kubernetes_clients(
            kubeconfig_path=kubeconfig_path,
            context=tools.kube_context,
            in_cluster=tools.in_cluster,
        )

    return _load


class SecretResolver:
    """Fills in credentials missing from the environment using secrets in the current namespace.

    Each named secret is read from the cluster at most once per resolver. Clients are
    created on first use so tasks whose credentials all come from the environment never
    talk to the cluster.
    """

    def __init__(
        self,
        *,
        environ: Mapping[str, str],
        tools: ToolConfig,
        clients_loader: ClientsLoader | None = None,
    ) -> None:
        self.environ = environ
        self.tools = tools
        self._clients_loader = clients_loader or default_clients_loader(tools)
        self._clients: KubernetesClients | None = None
        self._kubeconfig_path: str | None = None
        self._secret_namespace: str | None = None
        self._secret_cache: dict[str, dict[str, str] | None] = {}

    @property
    def clients(self) -> KubernetesClients:
        if self._clients is None:
            self._clients = self._clients_loader(self._kubeconfig_path)
        return self._clients

    @property
    def kubeconfig_path(self) -> str | None:
        return self._kubeconfig_path

    def secret_namespace(self) -> str:
        if self._secret_namespace is None:
            self._secret_namespace = current_namespace(
                in_cluster=self.tools.in_cluster,
                kubeconfig_path=self._kubeconfig_path,
                context=self.tools.kube_context,
            )
        return self._secret_namespace

    def resolve(self, config: BackupConfig) -> ResolvedSecrets:
        if config.use_kubeconfig_from_secret:
            self.resolve_kubeconfig(config.kubeconfig_secret)

        access_key_id, secret_access_key, bucket = self.resolve_object_store(
            config.aws_secret,
            bucket=config.s3_bucket,
        )
        slack_webhook = self.resolve_webhook(config.slack_secret)
        return ResolvedSecrets(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            s3_bucket=bucket,
            slack_webhook=slack_webhook,
            kubeconfig_path=self._kubeconfig_path,
        )

    def resolve_kubeconfig(self, secret_name: str | None) -> str:
        if not secret_name:
            raise SecretResolutionError("No kubeconfig secret name specified")

        target_path = Path(self.tools.kubeconfig_path)
        if target_path.exists():
            raise SecretResolutionError(
                f"Refusing to fetch kubeconfig from secret '{secret_name}': '{target_path}' already exists"
            )

        data = self._read_secret(secret_name)
        if data is None:
            raise SecretResolutionError(f"Secret '{secret_name}' not found in namespace '{self.secret_namespace()}'")
        content = data.get(KUBECONFIG_KEY, "")
        if not content.strip():
            raise SecretResolutionError(f"Secret '{secret_name}' has no '{KUBECONFIG_KEY}' item")
        _validate_kubeconfig_content(content, source_label=f"secret '{secret_name}'")

        try:
            self._kubeconfig_path = write_kubeconfig_content(content, target_path)
        except OSError as error:
            raise SecretResolutionError(f"Unable to write kubeconfig to '{target_path}': {error}") from error

        logger.info("Using kubeconfig from secret '%s' written to '%s'", secret_name, self._kubeconfig_path)
        # Later lookups use the fetched kubeconfig and its namespace, not the bootstrap credentials.
        self._clients = None
        self._secret_namespace = None
        return self._kubeconfig_path

    def resolve_object_store(
        self,
        secret_name: str | None,
        *,
        bucket: str | None,
    ) -> tuple[str | None, str | None, str | None]:
        access_key_id = self.environ.get(AWS_ACCESS_KEY_ID_KEY) or None
        secret_access_key = self.environ.get(AWS_SECRET_ACCESS_KEY_KEY) or None
        if access_key_id and secret_access_key and bucket:
            return access_key_id, secret_access_key, bucket

        if not secret_name:
            if bucket and not (access_key_id and secret_access_key):
                raise SecretResolutionError(
                    f"S3 bucket '{bucket}' configured but no AWS credentials in the environment "
                    "and no AWS secret name specified"
                )
            return access_key_id, secret_access_key, bucket

        data = self._read_secret(secret_name)
        if data is None:
            if bucket and not (access_key_id and secret_access_key):
                raise SecretResolutionError(
                    f"AWS secret '{secret_name}' not found in namespace '{self.secret_namespace()}'"
                )
            logger.info("AWS secret '%s' not found, continuing without it", secret_name)
            return access_key_id, secret_access_key, bucket

        if not (access_key_id and secret_access_key):
            access_key_id = data.get(AWS_ACCESS_KEY_ID_KEY) or None
            secret_access_key = data.get(AWS_SECRET_ACCESS_KEY_KEY) or None
        if not bucket and data.get(S3_BUCKET_KEY):
            bucket = data[S3_BUCKET_KEY]
            logger.info("Using S3 bucket '%s' from secret '%s'", bucket, secret_name)
        if bucket and not (access_key_id and secret_access_key):
            logger.warning(
                "No AWS credentials found in secret '%s', relying on the AWS CLI default credential chain",
                secret_name,
            )
        return access_key_id, secret_access_key, bucket

    def resolve_webhook(self, secret_name: str | None) -> str | None:
        webhook = self.environ.get(SLACK_WEBHOOK_KEY) or None
        if webhook:
            return webhook
        if not secret_name:
            return None

        data = self._read_secret(secret_name)
        if data is None:
            logger.info("Slack secret '%s' not found, notifications disabled", secret_name)
            return None
        return data.get(SLACK_WEBHOOK_KEY) or None

    def _read_secret(self, secret_name: str) -> dict[str, str] | None:
        if secret_name in self._secret_cache:
            return self._secret_cache[secret_name]

        namespace = self.secret_namespace()
        try:
            data = read_secret_data(self.clients, namespace=namespace, name=secret_name)
        except KubernetesLookupError as error:
            raise SecretResolutionError(str(error)) from error
        self._secret_cache[secret_name] = data
        return data


def _validate_kubeconfig_content(content: str, *, source_label: str) -> None:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise SecretResolutionError(f"Kubeconfig from {source_label} is not valid YAML: {error}") from error
    if not isinstance(parsed, dict):
        raise SecretResolutionError(f"Kubeconfig from {source_label} must be a YAML mapping")
    if not parsed.get("clusters") or not parsed.get("contexts"):
        raise SecretResolutionError(f"Kubeconfig from {source_label} must define clusters and contexts")
