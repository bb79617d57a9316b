"""Retry policy for Proxmox API reads."""

from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fleeting_proxmox.core.exceptions import ProxmoxConnectionError
from fleeting_proxmox.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

REQUEST_ATTEMPTS = 3
REQUEST_MIN_WAIT = 0.5
REQUEST_MAX_WAIT = 4.0


def _request_path(retry_state: RetryCallState) -> str | None:
    # Decorated client methods take the API path right after self
    if len(retry_state.args) > 1:
        return retry_state.args[1]
    return retry_state.kwargs.get("path")


def retry_on_connection_error(
    max_attempts: int = REQUEST_ATTEMPTS,
    min_wait: float = REQUEST_MIN_WAIT,
    max_wait: float = REQUEST_MAX_WAIT,
) -> Callable[[F], F]:
    """Retry a Proxmox API read while the cluster cannot be reached.

    Only ``ProxmoxConnectionError`` is retried. HTTP errors and rejected
    authentication fail on the first attempt. Waits double from ``min_wait``
    up to ``max_wait``.

    Only apply this to idempotent client methods whose first positional
    argument after ``self`` is the API path.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Wait before the second attempt (seconds)
        max_wait: Upper bound for any wait (seconds)

    Returns:
        Decorator adding the retry policy
    """

    def log_retry(retry_state: RetryCallState) -> None:
        if retry_state.outcome and retry_state.outcome.failed:
            logger.warning(
                "proxmox_request_retry",
                path=_request_path(retry_state),
                attempt=retry_state.attempt_number,
                max_attempts=max_attempts,
                err=str(retry_state.outcome.exception()),
            )

    return retry(
        retry=retry_if_exception_type(ProxmoxConnectionError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, max=max_wait),
        before_sleep=log_retry,
        reraise=True,
    )
