from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ResolvedTarget:
    namespace: str
    pod: str
    container: str


@dataclass(frozen=True)
class ResolvedSecrets:
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    s3_bucket: str | None = None
    slack_webhook: str | None = None
    kubeconfig_path: str | None = None

    @property
    def has_aws_credentials(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key)


@dataclass(frozen=True)
class BackupResult:
    task: str
    namespace: str
    pod: str
    container: str
    status: str
    started_at: str
    finished_at: str
    destination: str | None = None
    message: str = ""
