"""Credentials file loading."""

import json
from pathlib import Path

from pydantic import ValidationError

from fleeting_proxmox.core.exceptions import CredentialsDecodeError, CredentialsReadError
from fleeting_proxmox.core.models import Credentials
from fleeting_proxmox.utils.logging import get_logger

logger = get_logger(__name__)


def load_credentials(path: str | Path) -> Credentials:
    """Read the credentials file.

    The file is read on every call so that rotated credentials are picked up
    at the next login or refresh without restarting the process.

    Args:
        path: Path to the JSON credentials file

    Returns:
        Credentials record

    Raises:
        CredentialsReadError: If the file cannot be opened or read
        CredentialsDecodeError: If the content is not a valid credential record
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise CredentialsReadError(
            f"failed to open credentials file from path='{path}': {e}"
        ) from e
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CredentialsDecodeError(
            f"failed to decode credentials file from path='{path}': {e}"
        ) from e

    if not isinstance(data, dict):
        raise CredentialsDecodeError(
            f"failed to decode credentials file from path='{path}': expected a JSON object"
        )

    try:
        credentials = Credentials.model_validate(data)
    except ValidationError as e:
        raise CredentialsDecodeError(
            f"failed to decode credentials file from path='{path}': {e}"
        ) from e

    logger.debug("credentials_loaded", path=str(path), token_auth=credentials.uses_api_token)
    return credentials
