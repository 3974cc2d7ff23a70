from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Mapping
import os

from .errors import InvalidInvocationError

DEFAULT_SECRET_NAME = "kube-backup"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0
TIMESTAMP_FORMAT = "%Y%m%d-%H%M"
WEBHOOK_TIMEOUT_ENV = "KUBE_BACKUP_WEBHOOK_TIMEOUT_SECONDS"

TASK_BACKUP_MYSQL_EXEC = "backup-mysql-exec"
TASK_BACKUP_FILES_EXEC = "backup-files-exec"
TASK_SHOW_ENVIRONMENT = "show-environment"
TASK_SHOW_AWS_CREDENTIALS = "show-aws-credentials"
TASK_TEST_SLACK = "test-slack"

BACKUP_TASKS = (TASK_BACKUP_MYSQL_EXEC, TASK_BACKUP_FILES_EXEC)
KNOWN_TASKS = (*BACKUP_TASKS, TASK_SHOW_ENVIRONMENT, TASK_SHOW_AWS_CREDENTIALS, TASK_TEST_SLACK)


@dataclass(frozen=True)
class BackupConfig:
    task: str
    timestamp: str
    namespace: str | None = None
    pod: str | None = None
    selector: str | None = None
    container: str | None = None
    database: str | None = None
    files_path: str | None = None
    backup_name: str | None = None
    backup_dir: Path = Path(".")
    dry_run: bool = False
    aws_secret: str | None = DEFAULT_SECRET_NAME
    slack_secret: str | None = DEFAULT_SECRET_NAME
    kubeconfig_secret: str | None = DEFAULT_SECRET_NAME
    use_kubeconfig_from_secret: bool = False
    s3_bucket: str | None = None
    s3_prefix: str | None = None
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def is_backup_task(self) -> bool:
        return self.task in BACKUP_TASKS


@dataclass(frozen=True)
class ToolConfig:
    kubectl: str = "kubectl"
    awscli: str = "aws"
    kubeconfig_path: Path = Path("~/.kube/config").expanduser()
    kube_context: str | None = None
    in_cluster: bool = False
    webhook_timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> ToolConfig:
        environ = os.environ if environ is None else environ
        kubeconfig = environ.get("KUBECONFIG", "").strip()
        # Only the first entry of a multi-path KUBECONFIG is ever written to.
        kubeconfig_path = Path(kubeconfig.split(os.pathsep)[0]) if kubeconfig else Path("~/.kube/config")
        return cls(
            kubectl=environ.get("KUBECTL", "").strip() or "kubectl",
            awscli=environ.get("AWSCLI", "").strip() or "aws",
            kubeconfig_path=kubeconfig_path.expanduser(),
            kube_context=environ.get("KUBE_BACKUP_CONTEXT", "").strip() or None,
            in_cluster=bool(environ.get("KUBERNETES_SERVICE_HOST", "").strip()),
            webhook_timeout_seconds=_positive_seconds(environ, WEBHOOK_TIMEOUT_ENV, DEFAULT_WEBHOOK_TIMEOUT_SECONDS),
        )


def default_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def _positive_seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError as error:
        raise InvalidInvocationError(f"{name} must be a number of seconds, got '{raw_value}'") from error
    if value <= 0:
        raise InvalidInvocationError(f"{name} must be greater than zero, got '{raw_value}'")
    return value
