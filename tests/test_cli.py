from __future__ import annotations

from pathlib import Path
import subprocess
from types import SimpleNamespace
from typing import Any
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from kube_backup._version import __version__
from kube_backup.cli import main
from kube_backup.k8s import KubernetesClients

TIMESTAMP = "20261019-1230"


def _pod(name: str, containers: tuple[str, ...] = ("mysql",), ready: bool = True) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(containers=[SimpleNamespace(name=container) for container in containers]),
        status=SimpleNamespace(
            container_statuses=[SimpleNamespace(name=container, ready=ready) for container in containers]
        ),
    )


def _clients(*, pod: SimpleNamespace | None = None, selector_pods: list[SimpleNamespace] | None = None) -> KubernetesClients:
    core_api = Mock()
    core_api.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
    core_api.read_namespaced_pod.return_value = pod or _pod("db-0")
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=selector_pods or [])
    return KubernetesClients(api_client=Mock(), core_api=core_api)


@pytest.fixture
def notifications(monkeypatch: pytest.MonkeyPatch) -> Mock:
    send_notification = Mock(return_value=True)
    monkeypatch.setattr("kube_backup.cli.send_notification", send_notification)
    return send_notification


@pytest.fixture
def cluster(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("kube_backup.credentials.current_namespace", Mock(return_value="kube-backup"))
    monkeypatch.setattr("kube_backup.cli.current_namespace", Mock(return_value="default"))
    monkeypatch.setattr("kube_backup.backup.shutil.which", lambda tool: f"/usr/local/bin/{tool}")


def _fake_run(payload: bytes, returncode: int = 0) -> Mock:
    def _run(command: list[str], *, stdout: Any, stderr: Any, check: bool) -> subprocess.CompletedProcess:
        stdout.write(payload)
        return subprocess.CompletedProcess(args=command, returncode=returncode, stdout=None, stderr=b"")

    return Mock(side_effect=_run)


def _run_main(args: list[str], clients: KubernetesClients, environ: dict[str, str] | None = None) -> int:
    return main(args, environ=environ or {}, clients_loader=lambda _path: clients)


def test_main_with_unknown_task_exits_invalid_invocation_and_prints_usage(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(["--task=bogus"], environ={})

    assert exit_code == 3
    stderr = capsys.readouterr().err
    assert "Unknown task 'bogus'" in stderr
    assert "usage: kube-backup" in stderr


def test_main_with_unknown_flag_exits_invalid_invocation(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(["--task=backup-mysql-exec", "--pod=db-0", "--colour=blue"], environ={})

    assert exit_code == 3
    assert "unrecognized arguments: --colour=blue" in capsys.readouterr().err


def test_main_without_task_exits_invalid_invocation(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([], environ={}) == 3
    assert "No task specified" in capsys.readouterr().err


def test_main_with_pod_and_selector_exits_invalid_invocation() -> None:
    assert main(["--task=backup-mysql-exec", "--pod=db-0", "--selector=app=db"], environ={}) == 3


def test_main_with_files_task_without_path_exits_invalid_invocation(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--task=backup-files-exec", "--pod=web-0"], environ={}) == 3
    assert "--files-path" in capsys.readouterr().err


def test_main_with_malformed_timestamp_exits_invalid_invocation() -> None:
    assert main(["--task=backup-mysql-exec", "--pod=db-0", "--timestamp=2026/10/19"], environ={}) == 3


def test_main_with_non_numeric_webhook_timeout_exits_invalid_invocation(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        ["--task=test-slack"],
        environ={"KUBE_BACKUP_WEBHOOK_TIMEOUT_SECONDS": "ten", "SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 3
    assert "KUBE_BACKUP_WEBHOOK_TIMEOUT_SECONDS must be a number of seconds" in capsys.readouterr().err


def test_main_with_webhook_timeout_from_environment_passes_it_to_notifier(notifications: Mock) -> None:
    exit_code = main(
        ["--task=test-slack"],
        environ={"KUBE_BACKUP_WEBHOOK_TIMEOUT_SECONDS": "2.5", "SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 0
    assert notifications.call_args.kwargs["timeout_seconds"] == 2.5


def test_main_with_help_and_version_exit_success(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--help"], environ={}) == 0
    assert "--use-kubeconfig-from-secret" in capsys.readouterr().out

    assert main(["--version"], environ={}) == 0
    assert capsys.readouterr().out.strip() == f"kube-backup version {__version__}"


def test_main_mysql_backup_to_local_path_writes_dump_and_exits_success(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    cluster: None,
    notifications: Mock,
) -> None:
    monkeypatch.setattr("kube_backup.backup.subprocess.run", _fake_run(b"dump-bytes"))

    exit_code = _run_main(
        [
            "--task=backup-mysql-exec",
            "--pod=db-0",
            "--container=mysql",
            "--database=app",
            f"--timestamp={TIMESTAMP}",
            f"--backup-dir={tmp_path}",
        ],
        _clients(),
        environ={"SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 0
    assert (tmp_path / "default" / TIMESTAMP / f"db-0-mysql-app-{TIMESTAMP}.gz").read_bytes() == b"dump-bytes"
    notifications.assert_called_once()
    assert notifications.call_args.args[0] == "https://hooks.example.com/x"
    assert notifications.call_args.kwargs["color"] == "good"


def test_main_with_timestamp_from_environment_groups_backups(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    cluster: None,
    notifications: Mock,
) -> None:
    monkeypatch.setattr("kube_backup.backup.subprocess.run", _fake_run(b"x"))

    exit_code = _run_main(
        ["--task=backup-files-exec", "--pod=db-0", "--files-path=/var/lib/mysql", "--namespace=apps"],
        _clients(),
        environ={"TIMESTAMP": "run-42", "KUBE_BACKUP_DIR": str(tmp_path)},
    )

    assert exit_code == 0
    assert (tmp_path / "apps" / "run-42" / "db-0-mysql-var_lib_mysql-run-42.tar.gz").exists()


def test_main_with_dry_run_resolves_target_but_writes_nothing(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    cluster: None,
    notifications: Mock,
    capsys: pytest.CaptureFixture[str],
) -> None:
    run = Mock()
    monkeypatch.setattr("kube_backup.backup.subprocess.run", run)
    clients = _clients()

    exit_code = _run_main(
        ["--task=backup-mysql-exec", "--pod=db-0", "--database=app", "--dry-run", f"--backup-dir={tmp_path}"],
        clients,
    )

    assert exit_code == 0
    run.assert_not_called()
    clients.core_api.read_namespaced_pod.assert_called_once()
    assert list(tmp_path.iterdir()) == []
    assert "Dry run: skipped transfer" in capsys.readouterr().out


def test_main_with_selector_matching_no_pods_skips_task(
    tmp_path: Path,
    cluster: None,
    notifications: Mock,
) -> None:
    exit_code = _run_main(
        ["--task=backup-mysql-exec", "--selector=app=db", f"--backup-dir={tmp_path}"],
        _clients(selector_pods=[]),
        environ={"SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 4
    assert notifications.call_args.kwargs["color"] == "warning"


def test_main_with_ambiguous_selector_fails_task(tmp_path: Path, cluster: None, notifications: Mock) -> None:
    exit_code = _run_main(
        ["--task=backup-mysql-exec", "--selector=app=db", f"--backup-dir={tmp_path}"],
        _clients(selector_pods=[_pod("db-0"), _pod("db-1")]),
        environ={"SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 1
    assert notifications.call_args.kwargs["color"] == "danger"


def test_main_with_unready_container_fails_task(tmp_path: Path, cluster: None, notifications: Mock) -> None:
    exit_code = _run_main(
        ["--task=backup-mysql-exec", "--pod=db-0", "--database=app", f"--backup-dir={tmp_path}"],
        _clients(pod=_pod("db-0", ready=False)),
    )

    assert exit_code == 1


def test_main_with_failed_dump_notifies_and_exits_operational_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    cluster: None,
    notifications: Mock,
) -> None:
    monkeypatch.setattr("kube_backup.backup.subprocess.run", _fake_run(b"", returncode=1))

    exit_code = _run_main(
        ["--task=backup-mysql-exec", "--pod=db-0", "--database=app", f"--backup-dir={tmp_path}"],
        _clients(),
        environ={"SLACK_WEBHOOK": "https://hooks.example.com/x"},
    )

    assert exit_code == 2
    message = notifications.call_args.args[1]
    assert "failed" in message
    assert "exec stage failed" in message
    assert notifications.call_args.kwargs["color"] == "danger"


def test_main_with_missing_kubectl_exits_missing_dependency(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    cluster: None,
    notifications: Mock,
) -> None:
    monkeypatch.setattr("kube_backup.backup.shutil.which", lambda _tool: None)

    exit_code = _run_main(["--task=backup-mysql-exec", "--pod=db-0", f"--backup-dir={tmp_path}"], _clients())

    assert exit_code == 3


def test_main_with_bucket_and_no_credentials_exits_operational_error(
    cluster: None,
    notifications: Mock,
) -> None:
    exit_code = _run_main(["--task=backup-mysql-exec", "--pod=db-0", "--s3-bucket=backups"], _clients())

    assert exit_code == 2


def test_main_show_environment_masks_sensitive_values(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        ["--task=show-environment"],
        environ={"AWS_SECRET_ACCESS_KEY": "super-secret-value", "HOME": "/home/backup"},
    )

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "super-secret-value" not in out
    assert "AWS_SECRET_ACCESS_KEY=supe****" in out
    assert "HOME=/home/backup" in out
    assert "task=show-environment" in out


def test_main_show_aws_credentials_from_environment(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = main(
        ["--task=show-aws-credentials", "--s3-bucket=backups"],
        environ={"AWS_ACCESS_KEY_ID": "AKIAEXAMPLE", "AWS_SECRET_ACCESS_KEY": "very-secret-key"},
    )

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "AWS_ACCESS_KEY_ID=AKIAEXAMPLE" in out
    assert "AWS_SECRET_ACCESS_KEY=very****" in out
    assert "S3_BUCKET=backups" in out


def test_main_test_slack_sends_warning_message(notifications: Mock) -> None:
    exit_code = main(["--task=test-slack"], environ={"SLACK_WEBHOOK": "https://hooks.example.com/x"})

    assert exit_code == 0
    assert notifications.call_args.kwargs["color"] == "warning"


def test_main_test_slack_without_webhook_exits_operational_error(cluster: None, notifications: Mock) -> None:
    exit_code = _run_main(["--task=test-slack"], _clients())

    assert exit_code == 2
    notifications.assert_not_called()
