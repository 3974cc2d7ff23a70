from __future__ import annotations

EXIT_SUCCESS = 0
EXIT_TASK_FAILED = 1
EXIT_OPERATIONAL_ERROR = 2
EXIT_INVALID_INVOCATION = 3
EXIT_NO_PODS_FOUND = 4


class KubeBackupError(RuntimeError):
    """Base error; ``exit_code`` is what the process exits with when it escapes a task."""

    exit_code = EXIT_TASK_FAILED


class InvalidInvocationError(KubeBackupError):
    exit_code = EXIT_INVALID_INVOCATION


class MissingDependencyError(KubeBackupError):
    exit_code = EXIT_INVALID_INVOCATION
