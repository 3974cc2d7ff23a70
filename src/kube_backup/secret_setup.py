"""Create or replace the credentials secret read by ``kube-backup`` in one or more namespaces."""

from __future__ import annotations

import base64
import logging
import os
import sys
from pathlib import Path
from typing import Mapping, Sequence

from kubernetes import client

from ._logging import LOG_LEVELS, configure_logging, get_log_level
from .cli import StrictArgumentParser
from .config import DEFAULT_SECRET_NAME, ToolConfig
from .credentials import (
    AWS_ACCESS_KEY_ID_KEY,
    AWS_SECRET_ACCESS_KEY_KEY,
    KUBECONFIG_KEY,
    S3_BUCKET_KEY,
    SLACK_WEBHOOK_KEY,
    ClientsLoader,
    default_clients_loader,
)
from .errors import EXIT_INVALID_INVOCATION, EXIT_SUCCESS, InvalidInvocationError, KubeBackupError
from .k8s import apply_secret, list_namespace_names

PROG = "kube-backup-secret"
APP_LABEL = "kube-backup"
DEFAULT_SECRET_ENV = "system"
DEFAULT_NAMESPACES = ("kube-backup",)
DEFAULT_KUBECONFIG_FILE = "kubeconfig"
REQUIRED_KEYS = (SLACK_WEBHOOK_KEY, AWS_ACCESS_KEY_ID_KEY, AWS_SECRET_ACCESS_KEY_KEY)

logger = logging.getLogger(__name__)


def build_parser() -> StrictArgumentParser:
    parser = StrictArgumentParser(
        prog=PROG,
        description=(
            "Create or replace the kube-backup secret from SLACK_WEBHOOK, AWS_ACCESS_KEY_ID, "
            "AWS_SECRET_ACCESS_KEY, optional S3_BUCKET and a kubeconfig file."
        ),
        allow_abbrev=False,
    )
    parser.add_argument("--secret-name", help=f"secret name (default: $SECRET_NAME or {DEFAULT_SECRET_NAME})")
    parser.add_argument("--secret-env", help=f"value of the 'env' label (default: $SECRET_ENV or {DEFAULT_SECRET_ENV})")
    parser.add_argument(
        "--namespace",
        action="append",
        dest="namespaces",
        help="namespace to write the secret to, repeatable (default: $NAMESPACES or kube-backup)",
    )
    parser.add_argument("--all-namespaces", action="store_true", help="write the secret to every namespace")
    parser.add_argument(
        "--kubeconfig-file",
        help=f"kubeconfig stored under the '{KUBECONFIG_KEY}' key (default: $KUBECONFIG_FILE or {DEFAULT_KUBECONFIG_FILE})",
    )
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="log level (default: INFO)")
    return parser


def build_secret_data(environ: Mapping[str, str], kubeconfig_file: Path) -> dict[str, str]:
    """Base64-encoded secret items. The three credentials and the kubeconfig file are required."""
    missing = [key for key in REQUIRED_KEYS if not environ.get(key, "").strip()]
    if missing:
        raise InvalidInvocationError(f"Must define {', '.join(missing)}")
    try:
        kubeconfig = kubeconfig_file.read_bytes()
    except OSError as error:
        raise InvalidInvocationError(f"kubeconfig file '{kubeconfig_file}' is missing or unreadable") from error

    items = {key: environ[key].strip().encode("utf-8") for key in REQUIRED_KEYS}
    if environ.get(S3_BUCKET_KEY, "").strip():
        items[S3_BUCKET_KEY] = environ[S3_BUCKET_KEY].strip().encode("utf-8")
    items[KUBECONFIG_KEY] = kubeconfig
    return {key: base64.b64encode(value).decode("ascii") for key, value in items.items()}


def build_secret(name: str, *, secret_env: str, data: dict[str, str]) -> client.V1Secret:
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        type="Opaque",
        metadata=client.V1ObjectMeta(name=name, labels={"app": APP_LABEL, "env": secret_env}),
        data=data,
    )


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
        secret_name = _first(args.secret_name, environ.get("SECRET_NAME"), DEFAULT_SECRET_NAME)
        secret_env = _first(args.secret_env, environ.get("SECRET_ENV"), DEFAULT_SECRET_ENV)
        kubeconfig_file = Path(
            _first(args.kubeconfig_file, environ.get("KUBECONFIG_FILE"), DEFAULT_KUBECONFIG_FILE)
        ).expanduser()
        data = build_secret_data(environ, kubeconfig_file)
        tools = ToolConfig.from_environ(environ)
    except InvalidInvocationError as error:
        print(f"{PROG}: {error}", file=sys.stderr)
        print(parser.format_usage(), file=sys.stderr)
        return EXIT_INVALID_INVOCATION

    configure_logging(args.log_level or get_log_level(environ))
    body = build_secret(secret_name, secret_env=secret_env, data=data)
    try:
        clients = (clients_loader or default_clients_loader(tools))(None)
        if args.all_namespaces:
            namespaces = list_namespace_names(clients)
        else:
            namespaces = _namespaces(args.namespaces, environ.get("NAMESPACES"))
        for namespace in namespaces:
            action = apply_secret(clients, namespace=namespace, body=body)
            logger.info("Secret '%s' %s in namespace '%s'", secret_name, action, namespace)
    except KubeBackupError as error:
        logger.error("%s", error)
        return error.exit_code
    return EXIT_SUCCESS


def _namespaces(flag_values: list[str] | None, environ_value: str | None) -> list[str]:
    # NAMESPACES is whitespace separated; flags may also carry comma separated lists.
    raw_values = flag_values or [environ_value or " ".join(DEFAULT_NAMESPACES)]
    namespaces: list[str] = []
    for raw_value in raw_values:
        for namespace in raw_value.replace(",", " ").split():
            if namespace not in namespaces:
                namespaces.append(namespace)
    return namespaces


def _first(*values: str | None) -> str:
    return next(value.strip() for value in values if value and value.strip())


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
