"""Instance group owning the Proxmox client and its session refresher."""

from fleeting_proxmox.clients.factory import build_proxmox_client
from fleeting_proxmox.clients.proxmox_client import ProxmoxClient
from fleeting_proxmox.core.config import Settings
from fleeting_proxmox.core.exceptions import (
    ConfigurationError,
    InstanceNotFoundError,
    ProxmoxAPIError,
)
from fleeting_proxmox.core.models import Credentials, Pool, VirtualMachine
from fleeting_proxmox.session.refresher import (
    SESSION_TICKET_REFRESH_INTERVAL,
    SESSION_TICKET_REFRESH_TIMEOUT,
    SessionTicketRefresher,
)
from fleeting_proxmox.utils.credentials import load_credentials
from fleeting_proxmox.utils.logging import get_logger


class InstanceGroup:
    """Pool of Proxmox virtual machines managed on behalf of an autoscaler.

    One group exists per managed pool. ``init`` builds the client and starts
    the session ticket refresher; ``shutdown`` stops the refresher and waits
    for it before releasing the client.
    """

    def __init__(
        self,
        settings: Settings,
        refresh_interval: float = SESSION_TICKET_REFRESH_INTERVAL,
        refresh_timeout: float = SESSION_TICKET_REFRESH_TIMEOUT,
    ):
        """Initialize instance group.

        Args:
            settings: Group settings
            refresh_interval: Seconds between session ticket refreshes
            refresh_timeout: Upper bound for one refresh cycle in seconds
        """
        self.settings = settings
        self.refresh_interval = refresh_interval
        self.refresh_timeout = refresh_timeout
        self.log = get_logger(__name__, pool=settings.pool)

        self._proxmox: ProxmoxClient | None = None
        self._refresher: SessionTicketRefresher | None = None

    @property
    def proxmox(self) -> ProxmoxClient:
        """Client shared by the refresher and foreground calls."""
        if self._proxmox is None:
            raise ConfigurationError("instance group is not initialized")
        return self._proxmox

    @property
    def refresher(self) -> SessionTicketRefresher | None:
        """Session ticket refresher, if started."""
        return self._refresher

    def init(self) -> "InstanceGroup":
        """Build the client and start the session ticket refresher.

        Returns:
            The initialized group

        Raises:
            ConfigurationError: If the group is already initialized or the client cannot be built
        """
        if self._proxmox is not None:
            raise ConfigurationError("instance group is already initialized")

        self._proxmox = self.get_proxmox_client()
        self.start_session_ticket_refresher()

        self.log.info("instance_group_initialized", url=self.settings.url)
        return self

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the refresher, wait for it to exit, then close the client.

        Args:
            timeout: Maximum time to wait for the refresher in seconds (no limit if None)
        """
        if self._refresher is not None:
            stopped = self._refresher.shutdown(wait=True, timeout=timeout)
            if not stopped:
                # Refresher may still touch the client; leave it open
                self.log.error("session_ticket_refresher_shutdown_timeout", timeout=timeout)
                return

        if self._proxmox is not None:
            self._proxmox.close()

        self.log.info("instance_group_shutdown")

    def get_proxmox_credentials(self) -> Credentials:
        """Read the credentials file configured for the group.

        Raises:
            CredentialsError: If the file cannot be read or decoded
        """
        return load_credentials(self.settings.credentials_file_path)

    def get_proxmox_client(self) -> ProxmoxClient:
        """Build a new authenticated client from the group settings.

        Raises:
            ConfigurationError: If the URL, the credentials or the login are invalid
        """
        return build_proxmox_client(self.settings)

    def start_session_ticket_refresher(self) -> SessionTicketRefresher:
        """Start renewing the client's session ticket in the background.

        Returns:
            The running refresher
        """
        self._refresher = SessionTicketRefresher(
            client=self.proxmox,
            credentials_loader=self.get_proxmox_credentials,
            interval=self.refresh_interval,
            timeout=self.refresh_timeout,
            logger=self.log,
        )
        self._refresher.start()
        return self._refresher

    def get_proxmox_pool(self) -> Pool:
        """Fetch the group's pool with its current members.

        Raises:
            ConfigurationError: If the pool cannot be fetched
        """
        try:
            return self.proxmox.get_pool(self.settings.pool)
        except ProxmoxAPIError as e:
            raise ConfigurationError(f"failed to get pool id='{self.settings.pool}': {e}") from e

    def get_proxmox_vm(self, vmid: int) -> VirtualMachine:
        """Find a VM in the pool and return a handle on its current node.

        Membership is fetched on every call so migrations are picked up.
        Prefer ``get_proxmox_vm_on_node`` when the node is known; it makes
        fewer API calls.

        Args:
            vmid: VM id

        Returns:
            VirtualMachine handle scoped to its node

        Raises:
            ConfigurationError: If the pool, node or VM cannot be fetched
            InstanceNotFoundError: If the VM is not a member of the pool
        """
        pool = self.get_proxmox_pool()

        for member in pool.virtual_machines():
            if member.vmid == vmid:
                return self.get_proxmox_vm_on_node(vmid, member.node)

        raise InstanceNotFoundError(f"vm='{vmid}' not found in pool='{self.settings.pool}'")

    def get_proxmox_vm_on_node(self, vmid: int, node_name: str) -> VirtualMachine:
        """Get a VM handle on a known node.

        Args:
            vmid: VM id
            node_name: Node hosting the VM

        Returns:
            VirtualMachine handle scoped to the node

        Raises:
            ConfigurationError: If the node or VM cannot be fetched
        """
        try:
            node = self.proxmox.get_node(node_name)
        except ProxmoxAPIError as e:
            raise ConfigurationError(f"failed to get node='{node_name}': {e}") from e

        try:
            return self.proxmox.get_virtual_machine(node.name, vmid)
        except ProxmoxAPIError as e:
            raise ConfigurationError(
                f"failed to get vm='{vmid}' on node='{node_name}': {e}"
            ) from e
