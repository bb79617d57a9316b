"""Pytest configuration and shared fixtures."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from fleeting_proxmox.core.config import Settings

API_PATH = "/api2/json"
BASE_URL = "https://pve.example.com:8006"


def make_response(data: Any = None, status_code: int = 200, reason: str = "OK") -> MagicMock:
    """Build a fake requests.Response carrying a Proxmox ``data`` envelope."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = reason
    response.json.return_value = {"data": data}
    return response


class FakeProxmoxAPI:
    """Routes requests made through a mocked requests.Session to canned responses."""

    def __init__(self) -> None:
        self.http = MagicMock(spec=requests.Session)
        self.http.request.side_effect = self._handle
        self.routes: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def add(
        self,
        method: str,
        path: str,
        data: Any = None,
        status_code: int = 200,
        reason: str = "OK",
    ) -> None:
        self.routes[(method, path)] = make_response(data, status_code, reason)

    def add_handler(self, method: str, path: str, handler: Callable[..., Any]) -> None:
        self.routes[(method, path)] = handler

    def calls_to(self, method: str, path: str) -> list[dict[str, Any]]:
        return [kwargs for m, p, kwargs in self.calls if m == method and p == path]

    def _handle(self, method: str, url: str, **kwargs: Any) -> Any:
        path = url.split(API_PATH, 1)[1]
        self.calls.append((method, path, kwargs))

        route = self.routes.get((method, path))
        if route is None:
            return make_response(None, 501, f"Method '{method} {path}' not implemented")
        if callable(route) and not isinstance(route, MagicMock):
            return route(**kwargs)
        return route


@pytest.fixture
def api_response() -> Callable[..., MagicMock]:
    """Factory for fake API responses."""
    return make_response


@pytest.fixture
def fake_api() -> FakeProxmoxAPI:
    """Fake Proxmox VE API behind a mocked HTTP session."""
    return FakeProxmoxAPI()


@pytest.fixture
def ticket_data() -> dict[str, str]:
    """Response body of a successful ``/access/ticket`` call."""
    return {
        "username": "fleeting@pve",
        "ticket": "PVE:fleeting@pve:6720A1B0::c2lnbmF0dXJl",
        "CSRFPreventionToken": "6720A1B0:Y3NyZg",
    }


@pytest.fixture
def password_credentials() -> dict[str, str]:
    """Credential record selecting password login."""
    return {
        "username": "fleeting",
        "password": "s3cret",
        "realm": "pve",
    }


@pytest.fixture
def token_credentials() -> dict[str, str]:
    """Credential record selecting API token authentication."""
    return {
        "username": "fleeting",
        "password": "0d4a9f6e-2b1c-4f7e-9a55-3c1e6b2d8f10",
        "token": "autoscaler",
        "realm": "pve",
    }


@pytest.fixture
def write_credentials(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    """Write a credential record to a temporary JSON file."""

    def _write(record: dict[str, Any]) -> Path:
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps(record))
        return path

    return _write


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build settings pointing at the fake cluster."""

    def _make(credentials_file_path: Path | str | None = None, **overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "url": BASE_URL,
            "pool": "fleeting",
            "credentials_file_path": str(credentials_file_path or tmp_path / "credentials.json"),
        }
        values.update(overrides)
        return Settings(**values)

    return _make


# ==============================================================================
# Pytest Markers
# ==============================================================================


def pytest_configure(config: Any) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Tests that wait on real timers")
