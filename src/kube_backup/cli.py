"""Command line entry point: parse options, resolve secrets and target, run one task."""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Mapping, Sequence

from ._logging import LOG_LEVELS, configure_logging, get_log_level
from ._version import __version__
from .backup import STATUS_DRY_RUN, STATUS_FAILED, BackupManager, BackupManagerConfig, check_tools
from .config import (
    DEFAULT_SECRET_NAME,
    KNOWN_TASKS,
    TASK_BACKUP_FILES_EXEC,
    TASK_BACKUP_MYSQL_EXEC,
    TASK_SHOW_AWS_CREDENTIALS,
    TASK_SHOW_ENVIRONMENT,
    TASK_TEST_SLACK,
    BackupConfig,
    ToolConfig,
    default_timestamp,
)
from .credentials import SLACK_WEBHOOK_KEY, ClientsLoader, SecretResolver
from .errors import (
    EXIT_INVALID_INVOCATION,
    EXIT_OPERATIONAL_ERROR,
    EXIT_SUCCESS,
    InvalidInvocationError,
    KubeBackupError,
)
from .k8s import current_namespace
from .models import BackupResult, ResolvedSecrets
from .notify import COLOR_DANGER, COLOR_GOOD, COLOR_WARNING, send_notification
from .target import NoPodsFoundError, resolve_target

PROG = "kube-backup"
TIMESTAMP_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_SENSITIVE_KEY_PATTERN = re.compile(r"SECRET|PASSWORD|TOKEN|WEBHOOK|ACCESS_KEY|CREDENTIAL", re.IGNORECASE)

logger = logging.getLogger(__name__)


class StrictArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as ``InvalidInvocationError`` instead of exiting."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise InvalidInvocationError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = StrictArgumentParser(
        prog=PROG,
        description="Back up the contents of containers running on a Kubernetes cluster.",
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument("--task", help=f"task to run: {', '.join(KNOWN_TASKS)}")
    parser.add_argument("--namespace", help="target namespace (default: current context namespace)")

    selection = parser.add_mutually_exclusive_group()
    selection.add_argument("--pod", help="name of the pod to back up")
    selection.add_argument("--selector", help="label selector that must match exactly one pod")

    parser.add_argument("--container", help="container name (default: first container of the pod)")
    parser.add_argument("--database", help="database name (default: $MYSQL_DATABASE in the container)")
    parser.add_argument("--files-path", help="path inside the container to archive")
    parser.add_argument("--backup-name", help="name used in the backup filename instead of the source")
    parser.add_argument("--timestamp", help="timestamp shared by backups of one run (default: now, %%Y%%m%%d-%%H%%M)")
    parser.add_argument("--backup-dir", help="local directory for backups when no bucket is set (default: .)")
    parser.add_argument("--secret", default=DEFAULT_SECRET_NAME, help="default secret name for all credentials")
    parser.add_argument("--aws-secret", help="secret holding AWS credentials and optionally S3_BUCKET")
    parser.add_argument("--slack-secret", help="secret holding SLACK_WEBHOOK")
    parser.add_argument("--kubeconfig-secret", help="secret holding a kubeconfig blob under 'kubeconfig'")
    parser.add_argument(
        "--use-kubeconfig-from-secret",
        action="store_true",
        help="fetch the kubeconfig from --kubeconfig-secret before any other lookup",
    )
    parser.add_argument("--s3-bucket", help="S3 bucket to stream backups to")
    parser.add_argument("--s3-prefix", help="key prefix inside the bucket")
    parser.add_argument("--dry-run", action="store_true", help="resolve everything but skip the transfer")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="log level (default: INFO)")
    parser.add_argument("--help", action="store_true", help="show this help and exit")
    parser.add_argument("--version", action="store_true", help="show the version and exit")
    return parser


def build_config(args: argparse.Namespace, environ: Mapping[str, str]) -> BackupConfig:
    if not args.task:
        raise InvalidInvocationError("No task specified")
    if args.task not in KNOWN_TASKS:
        raise InvalidInvocationError(f"Unknown task '{args.task}'")

    timestamp = _value(args.timestamp) or _value(environ.get("TIMESTAMP")) or default_timestamp()
    if not TIMESTAMP_PATTERN.match(timestamp):
        raise InvalidInvocationError(f"Invalid timestamp '{timestamp}': use letters, digits, '-' and '_' only")

    default_secret = _value(args.secret)
    config = BackupConfig(
        task=args.task,
        timestamp=timestamp,
        namespace=_value(args.namespace),
        pod=_value(args.pod),
        selector=_value(args.selector),
        container=_value(args.container),
        database=_value(args.database),
        files_path=_value(args.files_path),
        backup_name=_value(args.backup_name),
        backup_dir=Path(_value(args.backup_dir) or _value(environ.get("KUBE_BACKUP_DIR")) or "."),
        dry_run=args.dry_run,
        aws_secret=_secret_name(args.aws_secret, default_secret),
        slack_secret=_secret_name(args.slack_secret, default_secret),
        kubeconfig_secret=_secret_name(args.kubeconfig_secret, default_secret),
        use_kubeconfig_from_secret=args.use_kubeconfig_from_secret,
        s3_bucket=_value(args.s3_bucket) or _value(environ.get("S3_BUCKET")),
        s3_prefix=_value(args.s3_prefix) or _value(environ.get("S3_PREFIX")),
        log_level=args.log_level or get_log_level(environ),
    )

    if config.is_backup_task and not (config.pod or config.selector):
        raise InvalidInvocationError(f"Task '{config.task}' requires --pod or --selector")
    if config.task == TASK_BACKUP_FILES_EXEC and not config.files_path:
        raise InvalidInvocationError(f"Task '{config.task}' requires --files-path")
    return config


def main(
    argv: Sequence[str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    clients_loader: ClientsLoader | None = None,
) -> int:
    environ = dict(os.environ if environ is None else environ)
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if args.help:
            print(parser.format_help())
            return EXIT_SUCCESS
        if args.version:
            print(f"{PROG} version {__version__}")
            return EXIT_SUCCESS
        config = build_config(args, environ)
        tools = ToolConfig.from_environ(environ)
    except InvalidInvocationError as error:
        print(f"{PROG}: {error}", file=sys.stderr)
        print(parser.format_usage(), file=sys.stderr)
        return EXIT_INVALID_INVOCATION

    configure_logging(config.log_level)
    resolver = SecretResolver(environ=environ, tools=tools, clients_loader=clients_loader)
    return run_task(config, tools=tools, resolver=resolver, environ=environ)


def run_task(
    config: BackupConfig,
    *,
    tools: ToolConfig,
    resolver: SecretResolver,
    environ: Mapping[str, str],
) -> int:
    if config.task == TASK_SHOW_ENVIRONMENT:
        return _show_environment(config, environ)
    if config.task == TASK_SHOW_AWS_CREDENTIALS:
        return _show_aws_credentials(config, resolver)
    if config.task == TASK_TEST_SLACK:
        return _test_slack(config, tools, resolver)
    return _run_backup(config, tools, resolver, environ)


def _run_backup(
    config: BackupConfig,
    tools: ToolConfig,
    resolver: SecretResolver,
    environ: Mapping[str, str],
) -> int:
    secrets: ResolvedSecrets | None = None
    try:
        secrets = resolver.resolve(config)
        manager_config = BackupManagerConfig(
            kubectl=tools.kubectl,
            awscli=tools.awscli,
            backup_dir=config.backup_dir,
            timestamp=config.timestamp,
            kubeconfig_path=secrets.kubeconfig_path,
            context=tools.kube_context,
            s3_bucket=secrets.s3_bucket,
            s3_prefix=config.s3_prefix,
            dry_run=config.dry_run,
            aws_access_key_id=secrets.aws_access_key_id,
            aws_secret_access_key=secrets.aws_secret_access_key,
        )
        check_tools(manager_config)

        namespace = config.namespace or current_namespace(
            in_cluster=tools.in_cluster,
            kubeconfig_path=resolver.kubeconfig_path,
            context=tools.kube_context,
        )
        target = resolve_target(
            resolver.clients,
            namespace=namespace,
            pod=config.pod,
            selector=config.selector,
            container=config.container,
        )
        manager = BackupManager(clients=resolver.clients, config=manager_config, environ=environ)
        if config.task == TASK_BACKUP_MYSQL_EXEC:
            result = manager.backup_mysql(target, database=config.database, backup_name=config.backup_name)
        else:
            result = manager.backup_files(target, files_path=config.files_path, backup_name=config.backup_name)
    except NoPodsFoundError as error:
        logger.warning("Skipping task '%s': %s", config.task, error)
        _notify(config, tools, secrets, environ, f"Skipped {config.task}: {error}", COLOR_WARNING)
        return error.exit_code
    except KubeBackupError as error:
        logger.error("Task '%s' failed: %s", config.task, error)
        _notify(config, tools, secrets, environ, f"Failed {config.task}: {error}", COLOR_DANGER)
        return error.exit_code

    if result.status == STATUS_FAILED:
        _notify(config, tools, secrets, environ, _result_message(result), COLOR_DANGER)
        return EXIT_OPERATIONAL_ERROR

    _notify(config, tools, secrets, environ, _result_message(result), COLOR_GOOD)
    logger.info("Done")
    return EXIT_SUCCESS


def _show_environment(config: BackupConfig, environ: Mapping[str, str]) -> int:
    print("Configuration:")
    for key, value in asdict(config).items():
        print(f"  {key}={value}")
    print("Environment:")
    for key in sorted(environ):
        print(f"  {key}={_display_value(key, environ[key])}")
    return EXIT_SUCCESS


def _show_aws_credentials(config: BackupConfig, resolver: SecretResolver) -> int:
    try:
        access_key_id, secret_access_key, bucket = resolver.resolve_object_store(
            config.aws_secret,
            bucket=config.s3_bucket,
        )
    except KubeBackupError as error:
        logger.error("Unable to resolve AWS credentials: %s", error)
        return error.exit_code

    print(f"AWS_ACCESS_KEY_ID={access_key_id or ''}")
    print(f"AWS_SECRET_ACCESS_KEY={_mask(secret_access_key) if secret_access_key else ''}")
    print(f"S3_BUCKET={bucket or ''}")
    return EXIT_SUCCESS


def _test_slack(config: BackupConfig, tools: ToolConfig, resolver: SecretResolver) -> int:
    try:
        webhook = resolver.resolve_webhook(config.slack_secret)
    except KubeBackupError as error:
        logger.error("Unable to resolve Slack webhook: %s", error)
        return error.exit_code

    if not webhook:
        logger.error("No Slack webhook configured in the environment or secret '%s'", config.slack_secret)
        return EXIT_OPERATIONAL_ERROR

    sent = send_notification(
        webhook,
        f"Test message from {PROG} version {__version__}",
        color=COLOR_WARNING,
        timeout_seconds=tools.webhook_timeout_seconds,
    )
    if not sent:
        return EXIT_OPERATIONAL_ERROR
    logger.info("Test message sent")
    return EXIT_SUCCESS


def _notify(
    config: BackupConfig,
    tools: ToolConfig,
    secrets: ResolvedSecrets | None,
    environ: Mapping[str, str],
    message: str,
    color: str,
) -> None:
    # Secret resolution may have failed before the webhook was known.
    webhook = secrets.slack_webhook if secrets is not None else environ.get(SLACK_WEBHOOK_KEY)
    prefix = "[dry run] " if config.dry_run else ""
    send_notification(webhook, f"{prefix}{message}", color=color, timeout_seconds=tools.webhook_timeout_seconds)


def _result_message(result: BackupResult) -> str:
    source = f"container '{result.container}' in pod '{result.namespace}/{result.pod}'"
    if result.status == STATUS_FAILED:
        return f"Backup ({result.task}) of {source} to '{result.destination}' failed: {result.message}"
    if result.status == STATUS_DRY_RUN:
        return f"Backup ({result.task}) of {source} to '{result.destination}' skipped"
    return f"Backup ({result.task}) of {source} to '{result.destination}' succeeded"


def _display_value(key: str, value: str) -> str:
    if _SENSITIVE_KEY_PATTERN.search(key):
        return _mask(value)
    return value


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****"


def _value(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _secret_name(value: str | None, default: str | None) -> str | None:
    # An explicit empty value (--aws-secret=) disables the lookup.
    if value is None:
        return default
    return _value(value)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
