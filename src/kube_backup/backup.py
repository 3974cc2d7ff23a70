from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
import logging
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
from typing import Iterable, Mapping

from .config import TASK_BACKUP_FILES_EXEC, TASK_BACKUP_MYSQL_EXEC
from .errors import EXIT_OPERATIONAL_ERROR, InvalidInvocationError, KubeBackupError, MissingDependencyError
from .k8s import KubernetesClients, exec_in_container
from .models import BackupResult, ResolvedTarget

MYSQL_EXTENSION = ".gz"
FILES_EXTENSION = ".tar.gz"
MYSQL_DATABASE_ENV = "MYSQL_DATABASE"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_DRY_RUN = "dry-run"
_SIGPIPE_STATUSES = (-signal.SIGPIPE, 128 + signal.SIGPIPE)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupManagerConfig:
    kubectl: str
    awscli: str
    backup_dir: Path
    timestamp: str
    kubeconfig_path: str | None = None
    context: str | None = None
    s3_bucket: str | None = None
    s3_prefix: str | None = None
    dry_run: bool = False
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None


@dataclass(frozen=True)
class BackupPlan:
    task: str
    description: str
    container_command: str
    filename: str
    destination: str
    local_path: Path | None


class BackupStageError(KubeBackupError):
    exit_code = EXIT_OPERATIONAL_ERROR

    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class MissingDatabaseError(KubeBackupError):
    pass


def check_tools(config: BackupManagerConfig) -> None:
    """Fail early when a binary needed for the transfer is not on PATH."""
    required = [config.kubectl]
    if config.s3_bucket:
        required.append(config.awscli)
    for tool in required:
        if shutil.which(tool) is None:
            raise MissingDependencyError(f"Missing dependency '{tool}'")


class BackupManager:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: BackupManagerConfig,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.clients = clients
        self.config = config
        self.environ = dict(environ or {})

    def backup_mysql(
        self,
        target: ResolvedTarget,
        *,
        database: str | None,
        backup_name: str | None = None,
    ) -> BackupResult:
        if not database:
            logger.info("No database specified, getting database name from container environment")
            database = self._container_database_name(target)
        if not database:
            raise MissingDatabaseError(
                f"No database name specified and {MYSQL_DATABASE_ENV} is not set in container "
                f"'{target.container}' of pod '{target.pod}'"
            )

        quoted = shlex.quote(database)
        plan = self._plan(
            target,
            task=TASK_BACKUP_MYSQL_EXEC,
            description=f"MySQL database '{database}'",
            container_command=pipeline_command(
                f'mysqldump {quoted} --user="${{MYSQL_USER}}" --password="${{MYSQL_PASSWORD}}" --single-transaction',
                "gzip",
            ),
            source=backup_name or database,
            extension=MYSQL_EXTENSION,
        )
        return self.run(target, plan)

    def backup_files(
        self,
        target: ResolvedTarget,
        *,
        files_path: str | None,
        backup_name: str | None = None,
    ) -> BackupResult:
        if not files_path:
            raise InvalidInvocationError(f"Task '{TASK_BACKUP_FILES_EXEC}' requires --files-path")

        plan = self._plan(
            target,
            task=TASK_BACKUP_FILES_EXEC,
            description=f"files '{files_path}'",
            container_command=f"tar -czf - -C {shlex.quote(files_path)} .",
            source=backup_name or files_path,
            extension=FILES_EXTENSION,
        )
        return self.run(target, plan)

    def run(self, target: ResolvedTarget, plan: BackupPlan) -> BackupResult:
        started_at = _utc_now_iso()
        exec_command = self.exec_command(target, plan.container_command)
        logger.info(
            "Backing up %s from container '%s' in pod '%s' to '%s'",
            plan.description,
            target.container,
            target.pod,
            plan.destination,
        )
        logger.debug("Exec command: %s", shlex.join(exec_command))

        if self.config.dry_run:
            logger.info("Dry run: skipped transfer to '%s'", plan.destination)
            return self._result(target, plan, status=STATUS_DRY_RUN, started_at=started_at, message="transfer skipped")

        try:
            if plan.local_path is None:
                self._stream_to_bucket(exec_command, plan.destination)
            else:
                self._stream_to_file(exec_command, plan.local_path)
        except BackupStageError as error:
            logger.error("Failed to complete backup: %s", error)
            return self._result(target, plan, status=STATUS_FAILED, started_at=started_at, message=str(error))

        logger.info("Backup of %s to '%s' succeeded", plan.description, plan.destination)
        return self._result(target, plan, status=STATUS_SUCCESS, started_at=started_at)

    def exec_command(self, target: ResolvedTarget, container_command: str) -> list[str]:
        command = [self.config.kubectl]
        if self.config.kubeconfig_path:
            command.extend(["--kubeconfig", self.config.kubeconfig_path])
        if self.config.context:
            command.extend(["--context", self.config.context])
        command.extend(
            [
                "exec",
                "-i",
                target.pod,
                f"--container={target.container}",
                f"--namespace={target.namespace}",
                "--",
                "sh",
                "-c",
                container_command,
            ]
        )
        return command

    def _plan(
        self,
        target: ResolvedTarget,
        *,
        task: str,
        description: str,
        container_command: str,
        source: str,
        extension: str,
    ) -> BackupPlan:
        filename = build_backup_filename(
            [target.pod, target.container, source, self.config.timestamp],
            extension=extension,
        )
        destination, local_path = backup_destination(
            namespace=target.namespace,
            timestamp=self.config.timestamp,
            filename=filename,
            bucket=self.config.s3_bucket,
            prefix=self.config.s3_prefix,
            backup_dir=self.config.backup_dir,
        )
        return BackupPlan(
            task=task,
            description=description,
            container_command=container_command,
            filename=filename,
            destination=destination,
            local_path=local_path,
        )

    def _container_database_name(self, target: ResolvedTarget) -> str:
        output = exec_in_container(
            self.clients,
            namespace=target.namespace,
            pod=target.pod,
            container=target.container,
            command=["sh", "-c", f'echo "${{{MYSQL_DATABASE_ENV}}}"'],
        )
        return (output or "").strip()

    def _stream_to_file(self, exec_command: list[str], local_path: Path) -> None:
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            with local_path.open("wb") as handle:
                completed = subprocess.run(exec_command, stdout=handle, stderr=subprocess.PIPE, check=False)
        except OSError as error:
            raise BackupStageError(stage="transfer", reason=_error_message(error)) from error

        if completed.returncode != 0:
            raise BackupStageError(
                stage="exec",
                reason=_process_failure(completed.returncode, completed.stderr),
            )

    def _stream_to_bucket(self, exec_command: list[str], destination: str) -> None:
        upload_command = [self.config.awscli, "s3", "cp", "-", destination]
        with tempfile.TemporaryFile() as exec_stderr:
            try:
                producer = subprocess.Popen(exec_command, stdout=subprocess.PIPE, stderr=exec_stderr)
            except OSError as error:
                raise BackupStageError(stage="exec", reason=_error_message(error)) from error
            try:
                consumer = subprocess.Popen(
                    upload_command,
                    stdin=producer.stdout,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=self._aws_environment(),
                )
            except OSError as error:
                producer.kill()
                producer.wait()
                raise BackupStageError(stage="transfer", reason=_error_message(error)) from error
            finally:
                # The consumer holds its own copy; closing ours lets the producer see SIGPIPE.
                if producer.stdout is not None:
                    producer.stdout.close()

            _, upload_stderr = consumer.communicate()
            exec_returncode = producer.wait()
            exec_stderr.seek(0)
            exec_error_output = exec_stderr.read()

        upload_failed = consumer.returncode != 0
        # A failed upload closes the pipe, so the exec side may then die of SIGPIPE.
        if exec_returncode != 0 and not (upload_failed and exec_returncode in _SIGPIPE_STATUSES):
            raise BackupStageError(stage="exec", reason=_process_failure(exec_returncode, exec_error_output))
        if upload_failed:
            raise BackupStageError(stage="transfer", reason=_process_failure(consumer.returncode, upload_stderr))

    def _aws_environment(self) -> dict[str, str]:
        environment = dict(self.environ)
        if self.config.aws_access_key_id and self.config.aws_secret_access_key:
            environment["AWS_ACCESS_KEY_ID"] = self.config.aws_access_key_id
            environment["AWS_SECRET_ACCESS_KEY"] = self.config.aws_secret_access_key
        return environment

    def _result(
        self,
        target: ResolvedTarget,
        plan: BackupPlan,
        *,
        status: str,
        started_at: str,
        message: str = "",
    ) -> BackupResult:
        return BackupResult(
            task=plan.task,
            namespace=target.namespace,
            pod=target.pod,
            container=target.container,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            destination=plan.destination,
            message=message,
        )


def build_backup_filename(parts: Iterable[str | None], *, extension: str) -> str:
    """Join cleaned parts with ``-``, skipping a part the name already ends with.

    Pod ``my-website`` with container ``website`` stays ``my-website``.
    """
    filename = ""
    for part in parts:
        cleaned = _clean_filename_part(part or "")
        if not cleaned:
            continue
        if filename.endswith(cleaned):
            continue
        filename = f"{filename}-{cleaned}" if filename else cleaned
    return f"{filename or 'backup'}{extension}"


def pipeline_command(producer: str, consumer: str) -> str:
    """Shell pipeline of ``producer | consumer`` that exits non-zero when either side fails.

    POSIX ``sh`` has no ``pipefail``, so the producer status is passed out on fd 3 while the
    consumer writes to the original stdout kept on fd 4.
    """
    return (
        "exec 4>&1; "
        f"status=$( {{ {{ {producer}; echo $? >&3; }} | {consumer} >&4; }} 3>&1 ) || exit $?; "
        'exit "${status:-1}"'
    )


def backup_destination(
    *,
    namespace: str,
    timestamp: str,
    filename: str,
    bucket: str | None,
    prefix: str | None,
    backup_dir: Path,
) -> tuple[str, Path | None]:
    if bucket:
        key_prefix = _normalize_prefix(prefix)
        key = "/".join(item for item in (key_prefix, namespace, timestamp, filename) if item)
        return f"s3://{bucket}/{key}", None

    local_path = backup_dir / namespace / timestamp / filename
    return str(local_path), local_path


def _clean_filename_part(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9-]", "_", value)
    cleaned = re.sub(r"_+", "_", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned)
    return cleaned.strip("_-")


def _normalize_prefix(prefix: str | None) -> str:
    return re.sub(r"/+", "/", (prefix or "").strip()).strip("/")


def _process_failure(returncode: int, stderr: bytes | None) -> str:
    detail = (stderr or b"").decode("utf-8", errors="replace").strip()
    if detail:
        return f"exit status {returncode}: {detail}"
    return f"exit status {returncode}"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
