"""Tests for collaborators module."""

from unittest import mock

import pytest

from hyperv_provisioner import collaborators
from hyperv_provisioner.collaborators import DhcpClient, DnsClient, SccmClient, WdsClient
from hyperv_provisioner.exceptions import ExecutionError, ExternalOperationError, SessionUnavailableError


@pytest.fixture
def context():
    return mock.MagicMock()


class TestCollaboratorErrors:
    """Tests for error translation."""

    def test_execution_error_becomes_external(self, context):
        """Test collaborator command failures are ExternalOperationError."""
        context.invoke.side_effect = ExecutionError("boom", host="dhcp01", operation="x")

        with pytest.raises(ExternalOperationError) as exc_info:
            DhcpClient(context).get_failover("dhcp01", "10.0.0.0")

        assert exc_info.value.host == "dhcp01"
        assert "DHCP" in str(exc_info.value)

    def test_session_unavailable_passes_through(self, context):
        """Test unreachable servers keep their own error type."""
        context.invoke.side_effect = SessionUnavailableError("down", host="dhcp01")

        with pytest.raises(SessionUnavailableError):
            DhcpClient(context).get_failover("dhcp01", "10.0.0.0")


class TestDhcpClient:
    def test_reservations_by_client_id_list(self, context):
        context.invoke.return_value = {"ip": "10.0.0.5", "client_id": "00-15-5d-00-00-01"}
        result = DhcpClient(context).get_reservations_by_client_id("dhcp01", "10.0.0.0", "00-15-5d-00-00-01")
        assert result == [{"ip": "10.0.0.5", "client_id": "00-15-5d-00-00-01"}]

    def test_add_reservation(self, context):
        DhcpClient(context).add_reservation("dhcp01", "10.0.0.0", "10.0.0.5", "00-15-5d-00-00-01", "vm1")
        context.invoke.assert_called_once_with(
            "dhcp01",
            collaborators.DHCP_ADD,
            {"scope": "10.0.0.0", "ip": "10.0.0.5", "client_id": "00-15-5d-00-00-01", "name": "vm1"},
        )


class TestWdsClient:
    def test_find_clients_deduplicates(self, context):
        """Test a client matching both id and name is returned once."""
        record = {"device_id": "GUID", "device_name": "vm1"}
        context.invoke.return_value = [record, dict(record)]
        assert WdsClient(context).find_clients("wds01", "GUID", "vm1") == [record]

    @pytest.mark.parametrize("mode", ["Standalone", "Integrated"])
    def test_get_mode(self, context, mode):
        context.invoke.return_value = mode
        assert WdsClient(context).get_mode("wds01") == mode

    def test_unreadable_mode_is_an_error(self, context):
        """Test output that names neither mode is not mistaken for Integrated."""
        context.invoke.return_value = None

        with pytest.raises(ExternalOperationError, match="unknown mode"):
            WdsClient(context).get_mode("wds01")

    def test_mode_script_checks_both_answers(self):
        body = collaborators.WDS_GET_MODE.body
        assert "Standalone configuration:\\s*Yes" in body
        assert "Standalone configuration:\\s*No" in body
        assert "throw" in body.splitlines()[-1]


class TestSccmClient:
    def test_site_code_is_passed(self, context):
        context.invoke.return_value = []
        SccmClient(context, site_code="PS1").find_devices_by_name("cm01", "vm1")
        context.invoke.assert_called_once_with(
            "cm01", collaborators.SCCM_FIND_BY_NAME, {"site_code": "PS1", "name": "vm1"}
        )

    def test_for_site(self, context):
        client = SccmClient(context)
        assert client.for_site(None) is client
        assert client.for_site("PS1").site_code == "PS1"

    def test_import_returns_resource_id(self, context):
        context.invoke.return_value = "16777220"
        assert SccmClient(context).import_device("cm01", "vm1", "GUID", None) == 16777220


class TestDnsClient:
    def test_remove_records(self, context):
        DnsClient(context).remove_records("dns01", "example.com", "vm1", "A")
        context.invoke.assert_called_once_with(
            "dns01", collaborators.DNS_REMOVE_RECORDS, {"zone": "example.com", "name": "vm1", "type": "A"}
        )
