"""Exceptions for the pgclaim controller."""

from __future__ import annotations

from datetime import datetime
from typing import Self, override

from kubernetes_asyncio.client import ApiException
from safir.datetime import format_datetime_for_logging
from safir.slack.blockkit import (
    SlackBaseField,
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextBlock,
    SlackTextField,
)
from safir.slack.sentry import SentryEventInfo

__all__ = [
    "ApplyConflictError",
    "ControllerTimeoutError",
    "DatabaseValidationError",
    "ImmutableFieldError",
    "InvalidQuantityError",
    "InvalidSpecError",
    "KubernetesError",
    "OutOfRangeError",
    "OwnershipConflictError",
    "UnsupportedVersionError",
]

_RETRYABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}
"""HTTP status codes from the Kubernetes API that are worth retrying."""


class DatabaseValidationError(Exception):
    """A ``PostgresDatabase`` spec was rejected.

    Validation errors are never retried or corrected automatically. They are
    returned by the admission webhook or shown to the developer in the
    status of the object.

    Parameters
    ----------
    message
        Human-readable explanation of the problem.
    field
        Name of the spec field at fault, if any.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class InvalidSpecError(DatabaseValidationError):
    """The spec is malformed (missing fields, wrong types, unknown fields)."""


class UnsupportedVersionError(DatabaseValidationError):
    """The requested PostgreSQL major version is not supported."""

    def __init__(self, version: int, supported: list[int]) -> None:
        versions = ", ".join(str(v) for v in supported)
        msg = f"PostgreSQL version {version} not supported (use {versions})"
        super().__init__(msg, "version")


class OutOfRangeError(DatabaseValidationError):
    """A numeric field is outside its allowed range."""

    def __init__(
        self, field: str, value: int, minimum: int, maximum: int
    ) -> None:
        msg = f"{field} must be between {minimum} and {maximum}, not {value}"
        super().__init__(msg, field)


class InvalidQuantityError(DatabaseValidationError):
    """A quantity field does not parse as a positive quantity."""

    def __init__(self, field: str, value: str) -> None:
        msg = f'{field} "{value}" is not a valid positive quantity'
        super().__init__(msg, field)


class ImmutableFieldError(DatabaseValidationError):
    """An update attempted to change a field that cannot be changed.

    Parameters
    ----------
    field
        Name of the immutable field.
    old
        Value of the field in the last accepted spec.
    new
        Requested new value.
    reason
        Additional explanation, if any.
    """

    def __init__(
        self, field: str, old: object, new: object, reason: str | None = None
    ) -> None:
        msg = f"{field} cannot be changed from {old} to {new}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg, field)
        self.old = old
        self.new = new


class ApplyConflictError(Exception):
    """A write to a ``PostgresCluster`` lost an optimistic concurrency race.

    The reconcile pass is abandoned and retried from freshly read state
    rather than retrying the stale write.
    """


class OwnershipConflictError(Exception):
    """A ``PostgresCluster`` of the same name is controlled by another owner.

    Parameters
    ----------
    namespace
        Namespace of the cluster.
    name
        Name of the cluster.
    owner
        Description of the current controlling owner.
    """

    def __init__(self, namespace: str, name: str, owner: str) -> None:
        msg = (
            f"PostgresCluster {namespace}/{name} already exists and is"
            f" controlled by {owner}"
        )
        super().__init__(msg)


class ControllerTimeoutError(SlackException):
    """Wraps `TimeoutError` with additional context and Slack support.

    Parameters
    ----------
    operation
        Operation that timed out.
    database
        Database (as ``namespace/name``) associated with the operation.
    started_at
        Start time of the operation.
    failed_at
        Time at which the operation timed out.
    """

    def __init__(
        self,
        operation: str,
        database: str | None = None,
        *,
        started_at: datetime,
        failed_at: datetime,
    ) -> None:
        self.started_at = started_at
        self.database = database
        elapsed = failed_at - started_at
        msg = f"{operation} timed out after {elapsed.total_seconds()}s"
        super().__init__(msg, failed_at=failed_at)

    @override
    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting with
            `~safir.slack.webhook.SlackWebhookClient`.
        """
        started_at = format_datetime_for_logging(self.started_at)
        failed_at = format_datetime_for_logging(self.failed_at)
        fields: list[SlackBaseField] = [
            SlackTextField(heading="Started at", text=started_at),
            SlackTextField(heading="Failed at", text=failed_at),
        ]
        if self.database:
            field = SlackTextField(heading="Database", text=self.database)
            fields.append(field)
        return SlackMessage(message=str(self), fields=fields)

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        started_at = format_datetime_for_logging(self.started_at)
        info.contexts.setdefault("info", {})["started_at"] = started_at
        if self.database:
            info.tags["database"] = self.database
        return info


class KubernetesError(SlackException):
    """An API call to Kubernetes failed.

    Parameters
    ----------
    message
        What was being attempted.
    kind
        Kind of the object being acted on.
    namespace
        Namespace of the object, or of the objects being listed or watched.
    name
        Name of the object being acted on.
    status
        HTTP status of the failure, if the API server answered.
    body
        Body of the error response, if any.
    """

    @classmethod
    def from_exception(
        cls,
        message: str,
        exc: ApiException,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> Self:
        """Wrap an exception from the Kubernetes client.

        Parameters
        ----------
        message
            What was being attempted.
        exc
            Exception from ``kubernetes_asyncio``.
        kind
            Kind of the object being acted on.
        namespace
            Namespace of the object.
        name
            Name of the object.

        Returns
        -------
        KubernetesError
            Newly-created exception.
        """
        return cls(
            message,
            kind=kind,
            namespace=namespace,
            name=name,
            status=exc.status,
            body=exc.body or exc.reason,
        )

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.status = status
        self.body = body

    @property
    def is_retryable(self) -> bool:
        """Whether the failure is likely to be transient.

        Failures without a status never reached the API server.
        """
        return self.status is None or self.status in _RETRYABLE_STATUSES

    @override
    def __str__(self) -> str:
        result = self._summary()
        return f"{result}: {self.body}" if self.body else result

    @override
    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        message.message = self._summary()
        if self.status:
            field = SlackTextField(heading="Status", text=str(self.status))
            message.fields.append(field)
        if target := self._target():
            block = SlackTextBlock(heading="Object", text=target)
            message.blocks.append(block)
        if self.body:
            code = SlackCodeBlock(heading="Error", code=self.body)
            message.blocks.append(code)
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return Sentry metadata for the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata.
        """
        info = super().to_sentry()
        tags = {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "status": str(self.status) if self.status else None,
        }
        info.tags.update({k: v for k, v in tags.items() if v})
        if self.body:
            info.attachments["body"] = self.body
        return info

    def _summary(self) -> str:
        """Return a one-line summary without the response body."""
        details = [d for d in (self._target(), self._status()) if d]
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"

    def _status(self) -> str | None:
        return f"status {self.status}" if self.status else None

    def _target(self) -> str | None:
        """Describe the object or objects the call acted on."""
        if self.name:
            path = f"{self.namespace}/{self.name}"
            path = path if self.namespace else self.name
            return f"{self.kind} {path}" if self.kind else path
        if self.kind and self.namespace:
            return f"{self.kind} in namespace {self.namespace}"
        return self.kind
