"""Custom exception hierarchy for the batch test runner."""
from __future__ import annotations

from typing import Any, Optional


class BatchRunnerError(Exception):
    """Base exception for all batch-runner errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Remote task API exceptions
class RemoteServiceError(BatchRunnerError):
    """Raised when the remote task API answers with a non-2xx response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        task_id: Optional[str] = None,
    ):
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if body:
            details["body_preview"] = body[:200]
        if task_id:
            details["task_id"] = task_id
        super().__init__(message, details)
        self.status_code = status_code
        self.body = body
        self.task_id = task_id


class ConcurrencyLimitError(RemoteServiceError):
    """Raised when the remote API refuses work because too many sessions are active."""

    pass


class TransientPollError(BatchRunnerError):
    """Raised when a single status poll fails; the poll loop absorbs it."""

    def __init__(self, message: str, task_id: Optional[str] = None, status_code: Optional[int] = None):
        details: dict[str, Any] = {}
        if task_id:
            details["task_id"] = task_id
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.task_id = task_id
        self.status_code = status_code


class PollTimeout(BatchRunnerError):
    """Raised when the poll budget is exhausted without a terminal status."""

    def __init__(self, max_attempts: int, task_id: Optional[str] = None):
        message = f"Remote task timed out after {max_attempts} attempts"
        details: dict[str, Any] = {"max_attempts": max_attempts}
        if task_id:
            details["task_id"] = task_id
        super().__init__(message, details)
        self.max_attempts = max_attempts
        self.task_id = task_id


# Persistence exceptions
class NotFoundError(BatchRunnerError):
    """Raised when a test case, project or batch row does not exist."""

    def __init__(self, message: str, entity: Optional[str] = None, entity_id: Optional[str] = None):
        details = {}
        if entity:
            details["entity"] = entity
        if entity_id:
            details["entity_id"] = entity_id
        super().__init__(message, details)
        self.entity = entity
        self.entity_id = entity_id


# Batch lifecycle exceptions
class BatchConflictError(BatchRunnerError):
    """Raised when a user already has an active batch."""

    def __init__(self, message: str, running_batch_id: Optional[str] = None):
        details = {"running_batch_id": running_batch_id} if running_batch_id else {}
        super().__init__(message, details)
        self.running_batch_id = running_batch_id


class BatchOwnershipError(BatchRunnerError):
    """Raised when a caller acts on a batch owned by another user."""

    def __init__(self, message: str, batch_id: Optional[str] = None, user_id: Optional[str] = None):
        details = {}
        if batch_id:
            details["batch_id"] = batch_id
        if user_id:
            details["user_id"] = user_id
        super().__init__(message, details)
        self.batch_id = batch_id
        self.user_id = user_id


class InvalidBatchStateError(BatchRunnerError):
    """Raised when a batch operation does not fit the batch's current status."""

    def __init__(self, message: str, batch_id: Optional[str] = None, status: Optional[str] = None):
        details = {}
        if batch_id:
            details["batch_id"] = batch_id
        if status:
            details["status"] = status
        super().__init__(message, details)
        self.batch_id = batch_id
        self.status = status


# Configuration exceptions
class ConfigurationError(BatchRunnerError):
    """Raised when configuration is invalid."""

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required config file is not found."""

    def __init__(self, file_path: str):
        super().__init__(f"Configuration file not found: {file_path}", {"file_path": file_path})
        self.file_path = file_path
