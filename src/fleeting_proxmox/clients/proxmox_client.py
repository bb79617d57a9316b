"""Proxmox VE API client."""

import threading
from typing import Any, TypeVar
from urllib.parse import quote

import requests
from pydantic import BaseModel, ValidationError

from fleeting_proxmox.core.exceptions import (
    ProxmoxAPIError,
    ProxmoxAuthError,
    ProxmoxConnectionError,
)
from fleeting_proxmox.core.models import Node, Pool, SessionTicket, VirtualMachine
from fleeting_proxmox.utils.logging import get_logger
from fleeting_proxmox.utils.retry import retry_on_connection_error

logger = get_logger(__name__)

AUTH_COOKIE_NAME = "PVEAuthCookie"
CSRF_HEADER_NAME = "CSRFPreventionToken"

ModelT = TypeVar("ModelT", bound=BaseModel)


class ProxmoxClient:
    """Proxmox VE API client wrapper.

    Authenticates either with a static API token or with a session ticket
    obtained from ``/access/ticket``. The active ticket is replaced atomically
    on login and renewal, so calls running on other threads always send a
    complete ticket/CSRF pair.
    """

    def __init__(
        self,
        base_url: str,
        http_session: requests.Session | None = None,
        verify_tls: bool = True,
        timeout: float = 30.0,
    ):
        """Initialize Proxmox client.

        Args:
            base_url: API root, e.g. https://pve.example.com:8006/api2/json
            http_session: HTTP transport (a new session is created if None)
            verify_tls: Verify the server certificate
            timeout: Default request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http_session if http_session is not None else requests.Session()
        self.http.verify = verify_tls

        self._api_token: str | None = None
        self._ticket: SessionTicket | None = None
        # Guards reads and swaps of the active ticket
        self._ticket_lock = threading.Lock()
        # Serializes logins and renewals
        self._login_lock = threading.Lock()

        logger.debug("proxmox_client_initialized", base_url=self.base_url, verify_tls=verify_tls)

    @property
    def uses_api_token(self) -> bool:
        """Whether requests are authenticated with a static API token."""
        return self._api_token is not None

    @property
    def session_ticket(self) -> SessionTicket | None:
        """Currently active session ticket."""
        with self._ticket_lock:
            return self._ticket

    def set_api_token(self, token_id: str, secret: str) -> None:
        """Authenticate all further requests with an API token.

        Args:
            token_id: Token identifier in ``user@realm!tokenid`` form
            secret: Token secret
        """
        with self._ticket_lock:
            self._api_token = f"PVEAPIToken={token_id}={secret}"
            self._ticket = None
        logger.info("proxmox_api_token_configured", token_id=token_id)

    def login(
        self,
        username: str,
        password: str,
        realm: str = "",
        otp: str | None = None,
        path: str = "",
        privs: str = "",
        timeout: float | None = None,
    ) -> SessionTicket:
        """Log in with username and password and store the issued ticket.

        Args:
            username: User name, with or without ``@realm``
            password: User password
            realm: Authentication realm
            otp: One-time password for two-factor authentication
            path: ACL path to verify privileges on
            privs: Privileges to verify on ``path``
            timeout: Request timeout (client default if None)

        Returns:
            The new session ticket

        Raises:
            ProxmoxAuthError: If the login is rejected
            ProxmoxAPIError: If the request fails
        """
        with self._login_lock:
            ticket = self._request_ticket(
                username=username,
                password=password,
                realm=realm,
                otp=otp,
                path=path,
                privs=privs,
                timeout=timeout,
            )
            self._store_ticket(ticket)

        logger.info("proxmox_login_succeeded", username=ticket.username)
        return ticket

    def renew_ticket(self, timeout: float | None = None) -> SessionTicket:
        """Renew the active session ticket, presenting it in place of a password.

        Args:
            timeout: Request timeout (client default if None)

        Returns:
            The renewed session ticket

        Raises:
            ProxmoxAuthError: If there is no ticket or it was rejected
            ProxmoxAPIError: If the request fails
        """
        with self._login_lock:
            current = self.session_ticket
            if current is None:
                raise ProxmoxAuthError("no session ticket to renew")

            ticket = self._request_ticket(
                username=current.username,
                password=current.ticket,
                timeout=timeout,
            )
            self._store_ticket(ticket)

        logger.debug("proxmox_ticket_renewed", username=ticket.username)
        return ticket

    def get_pool(self, pool_id: str) -> Pool:
        """Get a pool and its members.

        Args:
            pool_id: Pool name

        Returns:
            Pool object

        Raises:
            ProxmoxAPIError: If the pool cannot be retrieved
        """
        logger.debug("getting_pool", pool=pool_id)
        path = f"/pools/{quote(pool_id, safe='')}"
        pool = self._parse(Pool, path, self.get(path), poolid=pool_id)

        logger.debug("pool_retrieved", pool=pool_id, members=len(pool.members))
        return pool

    def get_node(self, node_name: str) -> Node:
        """Get a cluster node.

        Args:
            node_name: Node name

        Returns:
            Node object

        Raises:
            ProxmoxAPIError: If the node cannot be retrieved
        """
        logger.debug("getting_node", node=node_name)
        path = f"/nodes/{quote(node_name, safe='')}/status"
        return self._parse(Node, path, self.get(path), name=node_name)

    def get_virtual_machine(self, node_name: str, vmid: int) -> VirtualMachine:
        """Get a QEMU virtual machine on a node.

        Args:
            node_name: Node hosting the VM
            vmid: VM id

        Returns:
            VirtualMachine handle scoped to the node

        Raises:
            ProxmoxAPIError: If the VM cannot be retrieved
        """
        logger.debug("getting_virtual_machine", node=node_name, vmid=vmid)
        path = f"/nodes/{quote(node_name, safe='')}/qemu/{int(vmid)}/status/current"
        return self._parse(VirtualMachine, path, self.get(path), vmid=vmid, node=node_name)

    @retry_on_connection_error()
    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Issue an authenticated GET request.

        Args:
            path: API path below the base URL
            params: Query parameters

        Returns:
            The ``data`` member of the response

        Raises:
            ProxmoxAPIError: If the request fails
        """
        return self._request("GET", path, params=params)

    def close(self) -> None:
        """Close the HTTP transport."""
        self.http.close()
        logger.debug("proxmox_client_closed", base_url=self.base_url)

    def _parse(self, model: type[ModelT], path: str, data: Any, **fields: Any) -> ModelT:
        """Validate a response payload, pinning the fields known from the request."""
        if data is not None and not isinstance(data, dict):
            raise ProxmoxAPIError(f"GET {path} returned unexpected payload: expected an object")

        try:
            return model.model_validate({**(data or {}), **fields})
        except ValidationError as e:
            logger.error("proxmox_unexpected_payload", path=path, model=model.__name__)
            raise ProxmoxAPIError(f"GET {path} returned unexpected payload: {e}") from e

    def _store_ticket(self, ticket: SessionTicket) -> None:
        with self._ticket_lock:
            self._ticket = ticket

    def _auth(self, method: str) -> tuple[dict[str, str], dict[str, str]]:
        """Snapshot headers and cookies for one request."""
        with self._ticket_lock:
            api_token = self._api_token
            ticket = self._ticket

        if api_token is not None:
            return {"Authorization": api_token}, {}

        if ticket is None:
            raise ProxmoxAuthError("client is not authenticated")

        headers = {}
        if method != "GET":
            headers[CSRF_HEADER_NAME] = ticket.csrf_token
        return headers, {AUTH_COOKIE_NAME: ticket.ticket}

    def _request_ticket(
        self,
        username: str,
        password: str,
        realm: str = "",
        otp: str | None = None,
        path: str = "",
        privs: str = "",
        timeout: float | None = None,
    ) -> SessionTicket:
        form = {"username": username, "password": password}
        if realm:
            form["realm"] = realm
        if otp:
            form["otp"] = otp
        if path:
            form["path"] = path
        if privs:
            form["privs"] = privs

        data = self._send("POST", "/access/ticket", data=form, timeout=timeout)

        if not data or "ticket" not in data:
            raise ProxmoxAuthError(f"no ticket issued for user='{username}'")

        return SessionTicket(
            username=data.get("username", username),
            ticket=data["ticket"],
            csrf_token=data.get(CSRF_HEADER_NAME, ""),
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers, cookies = self._auth(method)
        return self._send(method, path, headers=headers, cookies=cookies, **kwargs)

    def _send(
        self,
        method: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"

        try:
            response = self.http.request(
                method,
                url,
                timeout=timeout if timeout is not None else self.timeout,
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning("proxmox_request_unreachable", method=method, path=path, error=str(e))
            raise ProxmoxConnectionError(f"{method} {path} failed: {e}") from e
        except requests.RequestException as e:
            logger.error("proxmox_request_failed", method=method, path=path, error=str(e))
            raise ProxmoxAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            logger.warning("proxmox_request_unauthorized", method=method, path=path)
            raise ProxmoxAuthError(
                f"{method} {path} unauthorized: {response.reason}",
                status_code=response.status_code,
            )

        if not response.ok:
            logger.error(
                "proxmox_request_failed",
                method=method,
                path=path,
                status=response.status_code,
                reason=response.reason,
            )
            raise ProxmoxAPIError(
                f"{method} {path} returned {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ProxmoxAPIError(
                f"{method} {path} returned invalid JSON", status_code=response.status_code
            ) from e

        return body.get("data") if isinstance(body, dict) else None
