import asyncio
import json
import aiohttp
import kubernetes_asyncio
from typing import Optional

_ALREADY_EXISTS = "alreadyexists"
_NOT_FOUND = "notfound"
_CONFLICT = "conflict"


class KetchError(Exception):
    """Base class for all errors raised by the ketch controller.

    Every error carries a short `reason` code, used in events and
    conditions, and a `transient` flag telling the caller whether the
    failure is expected to clear up on its own.
    """

    reason: str = "ReconcileError"
    transient: bool = False

    def __init__(self, message: str = "", *, reason: str = None, transient: bool = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason
        if transient is not None:
            self.transient = transient

    def __str__(self) -> str:
        return self.message

    def with_context(self, context: str) -> "KetchError":
        """Return a copy of this error with `context` prepended to the message.

        The class of the error is preserved so callers can still match on it.
        """
        err = self.__class__(
            f"{context}: {self.message}", reason=self.reason, transient=self.transient
        )
        err.__cause__ = self
        return err


class FrameworkReferenceError(KetchError):
    """Framework is missing, not linked to a namespace, or over its app quota."""

    reason = "FrameworkReferenceError"


class ConflictError(KetchError):
    """Write rejected because the object changed since it was read."""

    reason = "Conflict"
    transient = True


class InvalidCanaryStateError(KetchError):
    reason = "InvalidCanaryState"


class PodsNotReadyError(KetchError):
    reason = "PodsNotReady"
    transient = True


class InvalidArgumentsError(KetchError):
    reason = "InvalidArguments"


class CanaryPendingError(KetchError):
    """Canary pods are not healthy yet but the canary timeout has not elapsed."""

    reason = "CanaryPending"
    transient = True


class GenerationTimeoutError(KetchError):
    reason = "GenerationTimeout"


class ProgressDeadlineExceededError(KetchError):
    reason = "ProgressDeadlineExceeded"


class RolloutTimeoutError(KetchError):
    reason = "RolloutTimeout"


class ClusterApiError(KetchError):
    """Unclassified failure talking to the Kubernetes API."""

    reason = "ClusterApiError"
    transient = True

    def __init__(self, message: str = "", *, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status

    def with_context(self, context: str) -> "ClusterApiError":
        err = super().with_context(context)
        err.status = self.status
        return err


class ChartError(KetchError):
    reason = "ChartError"


class InvalidAppSpecError(KetchError):
    reason = "InvalidAppSpec"


def _api_reason(ex: kubernetes_asyncio.client.ApiException) -> str:
    try:
        err = json.loads(ex.body) if ex.body else {}
    except (json.JSONDecodeError, TypeError):
        return ""
    if not isinstance(err, dict):
        return ""
    return (err.get("reason") or "").lower()


def _api_message(ex: kubernetes_asyncio.client.ApiException) -> str:
    msg = f"Kubernetes API error ({ex.status}): {ex.reason}"
    try:
        if ex.body:
            body = json.loads(ex.body)
            if isinstance(body, dict) and "message" in body:
                msg = f"{msg} - {body['message']}"
    except (json.JSONDecodeError, TypeError):
        pass
    return msg


def already_exists_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    return _api_reason(ex) == _ALREADY_EXISTS


def not_found_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    return ex.status == 404 or _api_reason(ex) == _NOT_FOUND


def conflict_error(ex: kubernetes_asyncio.client.ApiException) -> bool:
    if not isinstance(ex, kubernetes_asyncio.client.ApiException):
        return False
    return ex.status == 409 or _api_reason(ex) == _CONFLICT


def classify_api_exception(ex: kubernetes_asyncio.client.ApiException) -> KetchError:
    """Convert a kubernetes ApiException into a classified ketch error.

    Args:
        ex: The ApiException raised by the kubernetes client

    Returns:
        ConflictError for optimistic concurrency failures, ClusterApiError otherwise.
        4xx errors other than 408 and 429 are not considered transient.
    """
    message = _api_message(ex)
    if conflict_error(ex):
        return ConflictError(message)
    transient = not (400 <= (ex.status or 0) < 500 and ex.status not in (408, 429))
    return ClusterApiError(message, status=ex.status, transient=transient)


#: Failures of the HTTP transport underneath the kubernetes client
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def classify_transport_error(ex: Exception) -> ClusterApiError:
    """Convert a connection or timeout failure of the kubernetes client."""
    return ClusterApiError(f"Kubernetes API request failed: {str(ex) or type(ex).__name__}")
