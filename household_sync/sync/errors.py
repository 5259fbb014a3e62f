"""
Error Classification and Retry Policy

DESIGN DECISION: Every failure is turned into one of five kinds, and the
kind alone decides what happens next:

| kind         | retried?                        | max | backoff              |
|--------------|---------------------------------|-----|----------------------|
| network      | automatically                   | 3-5 | exponential          |
| conflict     | only through the resolver       | 2   | none                 |
| validation   | never                           | 0   | -                    |
| unauthorized | never                           | 0   | -                    |
| unknown      | never                           | 0   | -                    |

Retrying a validation or auth failure cannot change the outcome, and
retrying an unknown failure would hide it as if it were transient.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from household_sync.config.settings import RetrySettings
from household_sync.models.sync import ErrorKind, ErrorState
from household_sync.services.backend.interface import (
    BackendError,
    NetworkError,
    RequestValidationError,
    UnauthorizedError,
    VersionConflictError,
)
from household_sync.sync.connectivity import ConnectivityMonitor


logger = structlog.get_logger(__name__)


USER_MESSAGES = {
    ErrorKind.NETWORK: "Please check your network connection.",
    ErrorKind.VALIDATION: "Please check the values you entered.",
    ErrorKind.CONFLICT: "A data conflict occurred. Please try again.",
    ErrorKind.UNAUTHORIZED: "Authentication is required. Please sign in again.",
    ErrorKind.UNKNOWN: "An unknown error occurred.",
}

# Checked in this order; first match wins
MESSAGE_KEYWORDS = (
    (ErrorKind.NETWORK, ("network", "fetch", "timeout", "timed out", "connection", "offline")),
    (ErrorKind.VALIDATION, ("validation", "invalid")),
    (ErrorKind.CONFLICT, ("conflict", "duplicate", "constraint", "version mismatch")),
    (ErrorKind.UNAUTHORIZED, ("unauthorized", "not authorized", "authenticat", "401", "forbidden")),
)

STATUS_KINDS = {
    408: ErrorKind.NETWORK,
    502: ErrorKind.NETWORK,
    503: ErrorKind.NETWORK,
    504: ErrorKind.NETWORK,
    400: ErrorKind.VALIDATION,
    422: ErrorKind.VALIDATION,
    409: ErrorKind.CONFLICT,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.UNAUTHORIZED,
}


# =============================================================================
# SYNC EXCEPTIONS
# =============================================================================

class SyncError(Exception):
    """Base exception for the sync layer. Carries the classified state."""

    def __init__(self, message: str, state: Optional[ErrorState] = None):
        self.state = state
        super().__init__(message)


class MutationFailedError(SyncError):
    """A mutation reached a terminal failure and was rolled back."""
    pass


class MutationSupersededError(SyncError):
    """A newer mutation on the same key replaced this one."""
    pass


class ConflictPendingError(SyncError):
    """The key has an unresolved conflict; writes are suspended."""
    pass


class ConflictResolutionError(SyncError):
    """Applying the operator's resolution failed."""
    pass


class RetryExhaustedError(SyncError):
    """No retry budget left for this error."""
    pass


# =============================================================================
# CLASSIFICATION
# =============================================================================

class ErrorClassifier:
    """
    Maps an arbitrary exception to an ErrorKind.

    Typed exceptions are checked first, then HTTP status codes,
    then message keywords.
    """

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, SyncError) and error.state is not None:
            return error.state.kind

        kind = self._classify_type(error)
        if kind is not None:
            return kind

        status = self._status_code(error)
        if status in STATUS_KINDS:
            return STATUS_KINDS[status]

        message = str(error).lower()
        for kind, keywords in MESSAGE_KEYWORDS:
            if any(keyword in message for keyword in keywords):
                return kind
        return ErrorKind.UNKNOWN

    def _classify_type(self, error: BaseException) -> Optional[ErrorKind]:
        if isinstance(error, (NetworkError, asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
            return ErrorKind.NETWORK
        if isinstance(error, (ValidationError, RequestValidationError)):
            return ErrorKind.VALIDATION
        if isinstance(error, VersionConflictError):
            return ErrorKind.CONFLICT
        if isinstance(error, UnauthorizedError):
            return ErrorKind.UNAUTHORIZED
        return None

    def _status_code(self, error: BaseException) -> Optional[int]:
        if isinstance(error, BackendError):
            return error.status_code
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code
        return None


# =============================================================================
# RETRY POLICY
# =============================================================================

class RetryPolicy(BaseModel):
    """Retry rules for one error kind."""

    kind: ErrorKind
    retryable: bool = False
    automatic: bool = False
    max_retries: int = 0
    base_delay_seconds: float = 0.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: float = 0.0

    def delay_for(self, retry_number: int) -> float:
        """Delay before the n-th retry (1-based)."""
        if self.base_delay_seconds <= 0 or retry_number < 1:
            return 0.0
        delay = self.base_delay_seconds * self.backoff_multiplier ** (retry_number - 1)
        return min(delay, self.max_delay_seconds) if self.max_delay_seconds else delay

    def wait_strategy(self):
        if self.base_delay_seconds <= 0:
            return wait_none()
        return wait_exponential(
            multiplier=self.base_delay_seconds,
            exp_base=self.backoff_multiplier,
            max=self.max_delay_seconds or self.base_delay_seconds,
        )


def build_retry_policies(settings: RetrySettings) -> dict[ErrorKind, RetryPolicy]:
    """The retry table, with network/conflict budgets taken from settings."""
    return {
        ErrorKind.NETWORK: RetryPolicy(
            kind=ErrorKind.NETWORK,
            retryable=True,
            automatic=True,
            max_retries=settings.network_max_retries,
            base_delay_seconds=settings.network_base_delay_seconds,
            backoff_multiplier=settings.network_backoff_multiplier,
            max_delay_seconds=settings.network_max_delay_seconds,
        ),
        ErrorKind.CONFLICT: RetryPolicy(
            kind=ErrorKind.CONFLICT,
            retryable=True,
            automatic=False,
            max_retries=settings.conflict_max_retries,
        ),
        ErrorKind.VALIDATION: RetryPolicy(kind=ErrorKind.VALIDATION),
        ErrorKind.UNAUTHORIZED: RetryPolicy(kind=ErrorKind.UNAUTHORIZED),
        ErrorKind.UNKNOWN: RetryPolicy(kind=ErrorKind.UNKNOWN),
    }


class RetryingCall:
    """
    Runs an operation, retrying network failures per the network policy.

    A retry only starts while connectivity is online, and is abandoned as
    soon as `should_stop` returns True. `retries` counts retries performed.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        classifier: ErrorClassifier,
        connectivity: Optional[ConnectivityMonitor] = None,
        should_stop: Callable[[], bool] = lambda: False,
        on_retry: Optional[Callable[[int, float], Awaitable[None]]] = None,
    ):
        self._policy = policy
        self._classifier = classifier
        self._connectivity = connectivity
        self._should_stop = should_stop
        self._on_retry = on_retry
        self.retries = 0

    def _is_retryable(self, error: BaseException) -> bool:
        return (
            self._classifier.classify(error) is ErrorKind.NETWORK
            and not self._should_stop()
        )

    async def __call__(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        max_attempts = self._policy.max_retries + 1 if self._policy.automatic else 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=self._policy.wait_strategy(),
            retry=retry_if_exception(self._is_retryable),
            reraise=True,
        )
        result = None
        async for attempt in retrying:
            with attempt:
                retry_number = attempt.retry_state.attempt_number - 1
                if retry_number > 0:
                    if self._should_stop():
                        raise MutationSupersededError("superseded before retry")
                    if self._connectivity is not None:
                        await self._connectivity.wait_until_online()
                    self.retries = retry_number
                    if self._on_retry is not None:
                        await self._on_retry(retry_number, self._policy.delay_for(retry_number))
                result = await operation()
        return result


# =============================================================================
# ERROR STATE HANDLER
# =============================================================================

class ErrorHandler:
    """
    Keeps the current ErrorState of every key.

    A state is created on failure and cleared by the next successful
    operation on the key or by explicit dismissal.
    """

    def __init__(
        self,
        policies: dict[ErrorKind, RetryPolicy],
        classifier: Optional[ErrorClassifier] = None,
        debug: bool = False,
    ):
        self._policies = policies
        self._classifier = classifier or ErrorClassifier()
        self._debug = debug
        self._states: dict[Any, ErrorState] = {}

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    def policy(self, kind: ErrorKind) -> RetryPolicy:
        return self._policies[kind]

    def message_for(self, kind: ErrorKind, error: Optional[BaseException] = None) -> str:
        message = USER_MESSAGES[kind]
        if self._debug and error is not None:
            return f"{message} ({error})"
        return message

    def handle_error(
        self,
        key: Any,
        error: BaseException,
        context: Optional[str] = None,
        retry_count: Optional[int] = None,
        allow_retry: bool = True,
    ) -> ErrorState:
        """
        Classify a failure and record it as the key's current state.

        Args:
            key: What failed (usually a CacheKey)
            error: The exception
            context: Where it happened, for logs
            retry_count: Retries already spent; defaults to the count carried
                         by the key's previous state of the same kind
            allow_retry: False marks the failure terminal regardless of budget
        """
        kind = self._classifier.classify(error)
        policy = self._policies[kind]
        previous = self._states.get(key)
        if retry_count is None:
            retry_count = previous.retry_count if previous and previous.kind == kind else 0

        state = ErrorState(
            kind=kind,
            message=self.message_for(kind, error),
            retry_count=retry_count,
            max_retries=policy.max_retries,
            can_retry=allow_retry and policy.retryable and retry_count < policy.max_retries,
            detail=str(error) or type(error).__name__,
            context=context,
        )
        self._states[key] = state

        logger.warning(
            "sync_error",
            key=str(key),
            kind=kind.value,
            context=context,
            retry_count=retry_count,
            can_retry=state.can_retry,
            detail=state.detail,
        )
        return state

    def state(self, key: Any) -> Optional[ErrorState]:
        return self._states.get(key)

    def states(self) -> dict[Any, ErrorState]:
        return dict(self._states)

    def clear(self, key: Any) -> None:
        self._states.pop(key, None)

    def dismiss(self, key: Any) -> bool:
        """Operator dismissed the error. Returns False if there was none."""
        return self._states.pop(key, None) is not None

    def clear_kind(self, kind: ErrorKind) -> list[Any]:
        """Drop every state of one kind (e.g. network errors once back online)."""
        keys = [k for k, s in self._states.items() if s.kind is kind]
        for key in keys:
            del self._states[key]
        return keys

    async def retry(
        self,
        key: Any,
        operation: Callable[[], Awaitable[Any]],
        context: Optional[str] = None,
    ) -> Any:
        """
        Explicitly retry a failed operation for a key.

        Waits the policy's backoff, runs the operation, and clears the
        state on success. On failure the state is updated with the new
        retry count and the error is re-raised.

        Raises:
            RetryExhaustedError: If the key's state does not allow a retry
        """
        state = self._states.get(key)
        if state is None or not state.can_retry:
            raise RetryExhaustedError("maximum number of retries exceeded", state)

        retry_number = state.retry_count + 1
        await asyncio.sleep(self._policies[state.kind].delay_for(retry_number))
        try:
            result = await operation()
        except Exception as e:
            # Sync errors wrap the backend failure that was classified
            cause = e.__cause__ if isinstance(e, SyncError) and e.__cause__ is not None else e
            self.handle_error(key, cause, context=context, retry_count=retry_number)
            raise
        self.clear(key)
        return result
