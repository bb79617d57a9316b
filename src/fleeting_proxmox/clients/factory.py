"""Builds authenticated Proxmox clients from instance group settings."""

from urllib.parse import urlsplit

import requests
import urllib3

from fleeting_proxmox.clients.proxmox_client import ProxmoxClient
from fleeting_proxmox.core.config import Settings
from fleeting_proxmox.core.exceptions import ConfigurationError, ProxmoxAPIError
from fleeting_proxmox.core.models import Credentials
from fleeting_proxmox.utils.credentials import load_credentials
from fleeting_proxmox.utils.logging import get_logger, log_error

logger = get_logger(__name__)

API_PATH = "/api2/json"


def api_base_url(url: str) -> str:
    """Validate the cluster URL and return the API root below it.

    Args:
        url: Cluster base URL

    Returns:
        URL of the JSON API root

    Raises:
        ConfigurationError: If the URL is malformed
    """
    try:
        parts = urlsplit(url)
        # Accessing port validates it
        _ = parts.port
    except ValueError as e:
        raise ConfigurationError(f"failed to parse URL='{url}': {e}") from e

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationError(f"failed to parse URL='{url}': expected http(s)://host[:port]")

    return f"{url.rstrip('/')}{API_PATH}"


def build_http_session(insecure_skip_tls_verify: bool) -> requests.Session:
    """Create the HTTP transport.

    Args:
        insecure_skip_tls_verify: Skip server certificate verification

    Returns:
        Configured requests session
    """
    session = requests.Session()
    session.verify = not insecure_skip_tls_verify

    if insecure_skip_tls_verify:
        # Self-signed cluster endpoints; certificate checks are off on purpose
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logger.warning("tls_verification_disabled")

    return session


def authenticate(client: ProxmoxClient, credentials: Credentials) -> None:
    """Authenticate a client with the mode the credential record selects.

    Args:
        client: Client to authenticate
        credentials: Credential record

    Raises:
        ConfigurationError: If the password login is rejected or fails
    """
    if credentials.uses_api_token:
        client.set_api_token(credentials.api_token_id, credentials.password)
        return

    try:
        client.login(
            username=credentials.username,
            password=credentials.password,
            realm=credentials.realm,
            otp=credentials.otp(),
            path=credentials.path,
            privs=credentials.privs,
        )
    except ProxmoxAPIError as e:
        log_error(logger, e, "proxmox_login_failed", username=credentials.username)
        raise ConfigurationError(
            f"failed to log in to proxmox as user='{credentials.username}': {e}"
        ) from e


def build_proxmox_client(
    settings: Settings,
    http_session: requests.Session | None = None,
) -> ProxmoxClient:
    """Build an authenticated Proxmox client.

    Args:
        settings: Instance group settings
        http_session: HTTP transport to use instead of a new one

    Returns:
        Ready to use ProxmoxClient

    Raises:
        ConfigurationError: If the URL, the credentials or the login are invalid
    """
    base_url = api_base_url(settings.url)
    credentials = load_credentials(settings.credentials_file_path)

    if http_session is None:
        http_session = build_http_session(settings.insecure_skip_tls_verify)

    client = ProxmoxClient(
        base_url,
        http_session=http_session,
        verify_tls=not settings.insecure_skip_tls_verify,
        timeout=settings.request_timeout_seconds,
    )
    try:
        authenticate(client, credentials)
    except Exception:
        client.close()
        raise

    logger.info(
        "proxmox_client_ready",
        base_url=base_url,
        token_auth=credentials.uses_api_token,
    )
    return client
