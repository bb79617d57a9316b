"""Background renewal of Proxmox session tickets."""

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum

import structlog

from fleeting_proxmox.clients.proxmox_client import ProxmoxClient
from fleeting_proxmox.core.exceptions import (
    ConfigurationError,
    ProxmoxAPIError,
    ProxmoxAuthError,
    RefresherStateError,
    SessionRefreshError,
)
from fleeting_proxmox.core.models import Credentials
from fleeting_proxmox.utils.logging import get_logger, log_error

SESSION_TICKET_REFRESH_INTERVAL = 60 * 60.0
SESSION_TICKET_REFRESH_TIMEOUT = 5.0
# Floor for the request deadline of a fallback login late in a cycle
MIN_REQUEST_TIMEOUT = 0.1

REFRESH_FAILED = "failed to refresh proxmox session"
CREDENTIALS_UNREADABLE = "failed to refresh proxmox session, could not read credentials"


class RefresherState(str, Enum):
    """Session refresher lifecycle state."""

    IDLE = "idle"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


class SessionTicketRefresher:
    """Renews the client's session ticket on a fixed interval until shut down.

    Proxmox tickets expire after two hours, so a long lived instance group
    must renew its ticket before API access is silently revoked. Each cycle
    is bounded by ``timeout``; a failed or abandoned cycle is logged and the
    client keeps its last ticket until the next interval.

    The loop waits on the shutdown event with the interval as timeout, so a
    shutdown request wins over the timer. A cycle that outlives ``timeout``
    is abandoned by the loop, but its requests share the same deadline, and
    the refresher only reports itself stopped once that worker has returned.
    """

    def __init__(
        self,
        client: ProxmoxClient,
        credentials_loader: Callable[[], Credentials],
        interval: float = SESSION_TICKET_REFRESH_INTERVAL,
        timeout: float = SESSION_TICKET_REFRESH_TIMEOUT,
        logger: structlog.BoundLogger | None = None,
    ):
        """Initialize the refresher.

        Args:
            client: Client whose ticket is renewed
            credentials_loader: Reads the current credentials, called every cycle
            interval: Seconds between refresh cycles
            timeout: Upper bound for a single refresh cycle in seconds
            logger: Logger to report to (module logger if None)
        """
        self.client = client
        self.credentials_loader = credentials_loader
        self.interval = interval
        self.timeout = timeout
        self.log = logger if logger is not None else get_logger(__name__)

        self._state = RefresherState.IDLE
        self._state_lock = threading.Lock()
        self._shutdown_trigger = threading.Event()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def state(self) -> RefresherState:
        """Current lifecycle state."""
        with self._state_lock:
            return self._state

    def start(self) -> None:
        """Launch the background refresh loop.

        Raises:
            RefresherStateError: If the refresher was already started or shut down
        """
        with self._state_lock:
            if self._state != RefresherState.IDLE:
                raise RefresherStateError(f"cannot start refresher in state '{self._state.value}'")
            self._state = RefresherState.RUNNING

        self._thread = threading.Thread(
            target=self._run,
            name="proxmox-session-ticket-refresher",
            daemon=True,
        )
        self._thread.start()

        self.log.info(
            "session_ticket_refresher_started",
            interval_seconds=self.interval,
            timeout_seconds=self.timeout,
        )

    def shutdown(self, wait: bool = True, timeout: float | None = None) -> bool:
        """Signal the loop to stop, optionally blocking until it has exited.

        Safe to call more than once and from any state.

        Args:
            wait: Block until the background thread has exited
            timeout: Maximum time to block in seconds (no limit if None)

        Returns:
            True if the refresher has stopped
        """
        with self._state_lock:
            if self._state == RefresherState.IDLE:
                self._state = RefresherState.STOPPED
                self._stopped.set()
            elif self._state == RefresherState.RUNNING:
                self._state = RefresherState.SHUTTING_DOWN
                self.log.info("session_ticket_refresher_shutting_down")

        self._shutdown_trigger.set()

        if not wait:
            return self._stopped.is_set()
        return self.wait_stopped(timeout)

    def wait_stopped(self, timeout: float | None = None) -> bool:
        """Block until the background thread has exited.

        Args:
            timeout: Maximum time to block in seconds (no limit if None)

        Returns:
            True if the refresher has stopped within the timeout
        """
        stopped = self._stopped.wait(timeout)
        if stopped and self._thread is not None:
            self._thread.join(timeout)
        return stopped

    def refresh_once(self) -> bool:
        """Run one refresh cycle bounded by ``timeout``.

        Errors are logged, never raised.

        Returns:
            True if the ticket was renewed
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="proxmox-session-refresh",
            )

        future = self._executor.submit(self._refresh)
        try:
            renewed = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            self.log.error(REFRESH_FAILED, err=f"timed out after {self.timeout}s")
            return False
        except SessionRefreshError as e:
            self.log.error(str(e), err=str(e.__cause__ or e))
            return False
        except Exception as e:
            log_error(self.log, e, REFRESH_FAILED)
            return False

        if renewed:
            self.log.info("refreshed proxmox session")
        return renewed

    def _run(self) -> None:
        try:
            while not self._shutdown_trigger.is_set():
                if self._shutdown_trigger.wait(timeout=self.interval):
                    break
                self.refresh_once()
        finally:
            if self._executor is not None:
                # Abandoned cycles still hold the client until their requests time out
                self._executor.shutdown(wait=True, cancel_futures=True)
                self._executor = None
            with self._state_lock:
                self._state = RefresherState.STOPPED
            self.log.info("session_ticket_refresher_stopped")
            self._stopped.set()

    def _refresh(self) -> bool:
        deadline = time.monotonic() + self.timeout

        try:
            credentials = self.credentials_loader()
        except ConfigurationError as e:
            raise SessionRefreshError(CREDENTIALS_UNREADABLE) from e

        if credentials.uses_api_token or self.client.uses_api_token:
            self.log.debug("session_ticket_refresh_skipped", reason="api_token")
            return False

        try:
            self.client.renew_ticket(timeout=self.timeout)
        except ProxmoxAuthError as e:
            # Ticket expired or was revoked; log in again with the current password
            self.log.warning("session_ticket_renewal_rejected", err=str(e))
            try:
                self.client.login(
                    username=credentials.username,
                    password=credentials.password,
                    realm=credentials.realm,
                    otp=credentials.otp(),
                    path=credentials.path,
                    privs=credentials.privs,
                    timeout=max(deadline - time.monotonic(), MIN_REQUEST_TIMEOUT),
                )
            except ProxmoxAPIError as login_error:
                raise SessionRefreshError(REFRESH_FAILED) from login_error
        except ProxmoxAPIError as e:
            raise SessionRefreshError(REFRESH_FAILED) from e

        return True
