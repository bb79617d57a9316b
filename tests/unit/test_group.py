"""Unit tests for the instance group."""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from fleeting_proxmox.clients.proxmox_client import ProxmoxClient
from fleeting_proxmox.core.exceptions import (
    ConfigurationError,
    CredentialsReadError,
    InstanceNotFoundError,
)
from fleeting_proxmox.group import InstanceGroup
from fleeting_proxmox.session.refresher import RefresherState

API_URL = "https://pve.example.com:8006/api2/json"

POOL_MEMBERS = [
    {"id": "storage/pve1/local-lvm", "type": "storage", "node": "pve1", "storage": "local-lvm"},
    {"id": "lxc/105", "type": "lxc", "vmid": 105, "node": "pve3"},
    {"id": "qemu/105", "type": "qemu", "vmid": 105, "node": "pve2", "name": "runner-105"},
]


@pytest.fixture
def group(make_settings, fake_api) -> InstanceGroup:
    """Group wired to a token authenticated client on the fake API."""
    group = InstanceGroup(make_settings())
    client = ProxmoxClient(API_URL, http_session=fake_api.http)
    client.set_api_token("fleeting@pve!autoscaler", "token-secret")
    group._proxmox = client
    return group


@pytest.fixture
def cluster(fake_api):
    """Pool with three members, one qemu VM 105 on pve2."""
    fake_api.add("GET", "/pools/fleeting", {"members": POOL_MEMBERS})
    fake_api.add("GET", "/nodes/pve2/status", {"uptime": 86400, "pveversion": "pve-manager/8.2.4"})
    fake_api.add(
        "GET",
        "/nodes/pve2/qemu/105/status/current",
        {"vmid": 105, "name": "runner-105", "status": "running"},
    )
    return fake_api


class TestGetProxmoxVM:
    """Tests for resolving VMs through pool membership."""

    def test_resolves_vm_on_hosting_node(self, group, cluster):
        """Test the qemu member is resolved on its node, skipping other types."""
        vm = group.get_proxmox_vm(105)

        assert vm.node == "pve2"
        assert vm.vmid == 105
        assert vm.name == "runner-105"
        assert cluster.calls_to("GET", "/nodes/pve3/status") == []

    def test_vm_not_in_pool(self, group, cluster):
        """Test an unknown VM id raises not found after the full scan."""
        with pytest.raises(InstanceNotFoundError, match="vm='999' not found in pool='fleeting'"):
            group.get_proxmox_vm(999)

        assert len(cluster.calls_to("GET", "/pools/fleeting")) == 1
        assert [path for _, path, _ in cluster.calls] == ["/pools/fleeting"]

    def test_resolve_is_idempotent(self, group, cluster):
        """Test resolving twice yields the same node and refetches membership."""
        first = group.get_proxmox_vm(105)
        second = group.get_proxmox_vm(105)

        assert first.node == second.node == "pve2"
        assert len(cluster.calls_to("GET", "/pools/fleeting")) == 2

    def test_first_matching_member_wins(self, group, fake_api):
        """Test members are scanned in API order."""
        fake_api.add(
            "GET",
            "/pools/fleeting",
            {
                "members": [
                    {"type": "qemu", "vmid": 110, "node": "pve1"},
                    {"type": "qemu", "vmid": 110, "node": "pve2"},
                ]
            },
        )
        fake_api.add("GET", "/nodes/pve1/status", {})
        fake_api.add("GET", "/nodes/pve1/qemu/110/status/current", {"status": "stopped"})

        vm = group.get_proxmox_vm(110)

        assert vm.node == "pve1"

    def test_observes_migration(self, group, cluster):
        """Test a migrated VM is found on its new node on the next lookup."""
        group.get_proxmox_vm(105)

        migrated = [dict(m) for m in POOL_MEMBERS]
        migrated[2]["node"] = "pve1"
        cluster.add("GET", "/pools/fleeting", {"members": migrated})
        cluster.add("GET", "/nodes/pve1/status", {})
        cluster.add("GET", "/nodes/pve1/qemu/105/status/current", {"status": "running"})

        assert group.get_proxmox_vm(105).node == "pve1"

    def test_pool_unavailable(self, group, fake_api):
        """Test a missing pool raises a configuration error."""
        fake_api.add("GET", "/pools/fleeting", None, status_code=500, reason="pool 'fleeting' does not exist")

        with pytest.raises(ConfigurationError, match="failed to get pool id='fleeting'"):
            group.get_proxmox_vm(105)

    def test_malformed_pool_payload(self, group, fake_api):
        """Test an unexpected pool payload stays within the configuration errors."""
        fake_api.add("GET", "/pools/fleeting", {"members": [{"id": "qemu/1", "vmid": 1, "node": "pve1"}]})

        with pytest.raises(ConfigurationError, match="failed to get pool id='fleeting': .*unexpected payload"):
            group.get_proxmox_vm(105)


class TestGetProxmoxVMOnNode:
    """Tests for node scoped lookups."""

    def test_resolves_without_pool_lookup(self, group, cluster):
        """Test the node scoped path skips the membership scan."""
        vm = group.get_proxmox_vm_on_node(105, "pve2")

        assert vm.node == "pve2"
        assert cluster.calls_to("GET", "/pools/fleeting") == []

    def test_node_unavailable(self, group, fake_api):
        """Test node errors carry the node name."""
        fake_api.add("GET", "/nodes/pve9/status", None, status_code=595, reason="no such node")

        with pytest.raises(ConfigurationError, match="failed to get node='pve9'"):
            group.get_proxmox_vm_on_node(105, "pve9")

    def test_vm_unavailable(self, group, cluster):
        """Test VM errors carry VM id and node name."""
        cluster.add(
            "GET",
            "/nodes/pve2/qemu/106/status/current",
            None,
            status_code=500,
            reason="Configuration file 'nodes/pve2/qemu-server/106.conf' does not exist",
        )

        with pytest.raises(ConfigurationError, match="failed to get vm='106' on node='pve2'"):
            group.get_proxmox_vm_on_node(106, "pve2")

    def test_malformed_vm_payload(self, group, cluster):
        """Test an unexpected VM payload carries VM id and node name."""
        cluster.add("GET", "/nodes/pve2/qemu/105/status/current", {"name": ["runner-105"]})

        with pytest.raises(ConfigurationError, match="failed to get vm='105' on node='pve2'"):
            group.get_proxmox_vm_on_node(105, "pve2")


class TestInstanceGroupLifecycle:
    """Tests for init and shutdown."""

    def test_uninitialized_group(self, make_settings):
        """Test the client is unavailable before init."""
        group = InstanceGroup(make_settings())

        with pytest.raises(ConfigurationError, match="not initialized"):
            _ = group.proxmox

    def test_init_starts_refresher_and_shutdown_stops_it(self, make_settings):
        """Test the refresher is bound to the group's lifetime."""
        group = InstanceGroup(make_settings(), refresh_interval=3600, refresh_timeout=0.5)
        client = MagicMock(spec=ProxmoxClient)

        with patch.object(InstanceGroup, "get_proxmox_client", return_value=client):
            group.init()

        assert group.proxmox is client
        assert group.refresher.state == RefresherState.RUNNING

        group.shutdown(timeout=5)

        assert group.refresher.state == RefresherState.STOPPED
        client.close.assert_called_once()

    def test_init_propagates_credentials_error(self, make_settings, tmp_path):
        """Test a missing credentials file fails init without starting the refresher."""
        group = InstanceGroup(make_settings(tmp_path / "missing.json"))

        with pytest.raises(CredentialsReadError):
            group.init()

        assert group.refresher is None

    def test_shutdown_without_init(self, make_settings):
        """Test shutdown of a group that never initialized."""
        InstanceGroup(make_settings()).shutdown()

    def test_get_proxmox_credentials_reads_group_file(
        self, make_settings, write_credentials, password_credentials
    ):
        """Test credentials come from the configured path."""
        group = InstanceGroup(make_settings(write_credentials(password_credentials)))

        assert group.get_proxmox_credentials().username == "fleeting"

    def test_init_twice_raises(self, make_settings):
        """Test a second init leaves the running client and refresher in place."""
        group = InstanceGroup(make_settings(), refresh_interval=3600, refresh_timeout=0.5)
        client = MagicMock(spec=ProxmoxClient)

        with patch.object(InstanceGroup, "get_proxmox_client", return_value=client) as mock_build:
            group.init()
            refresher = group.refresher

            with pytest.raises(ConfigurationError, match="already initialized"):
                group.init()

        try:
            assert mock_build.call_count == 1
            assert group.proxmox is client
            assert group.refresher is refresher
        finally:
            group.shutdown(timeout=5)

    def test_shutdown_closes_client_after_inflight_renewal(
        self, make_settings, write_credentials, password_credentials, fake_api, api_response, ticket_data
    ):
        """Test the client is closed only once a timed out renewal has returned."""
        events = []
        renewing = threading.Event()

        def issue_ticket(**kwargs):
            if kwargs["data"]["password"] == ticket_data["ticket"]:
                events.append("renew_start")
                renewing.set()
                time.sleep(0.5)
                events.append("renew_end")
            return api_response(ticket_data)

        fake_api.add_handler("POST", "/access/ticket", issue_ticket)
        fake_api.http.close.side_effect = lambda: events.append("http_close")

        client = ProxmoxClient(API_URL, http_session=fake_api.http)
        client.login("fleeting", "s3cret", realm="pve")

        group = InstanceGroup(
            make_settings(write_credentials(password_credentials)),
            refresh_interval=0.01,
            refresh_timeout=0.2,
        )
        group._proxmox = client

        group.start_session_ticket_refresher()
        assert renewing.wait(timeout=5)
        group.shutdown(timeout=5)

        assert events[-1] == "http_close"
        assert events.count("renew_start") == events.count("renew_end")
        assert group.refresher.state == RefresherState.STOPPED
