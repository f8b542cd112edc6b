"""Tests for decommission module."""

import pytest

from hyperv_provisioner.config import ReconcileOptions
from hyperv_provisioner.decommission import DecommissionController
from hyperv_provisioner.exceptions import PreconditionFailedError
from hyperv_provisioner.models import DeploymentMethod, DesiredVM
from hyperv_provisioner.network import DhcpReservationManager
from hyperv_provisioner.policy import AllowAll
from hyperv_provisioner.provisioning import ProvisioningDispatcher, WdsProvisioner
from hyperv_provisioner.topology import TopologyResolver

GB = 1024**3
OS = "C:\\VMs\\vm1\\os.vhdx"
CSV_DISK = "C:\\ClusterStorage\\Volume1\\vm1\\os.vhdx"
CID = "00-15-5d-00-00-42"

ADAPTERS = [{"name": "eth0", "ipAddress": "10.0.0.5", "dhcpServer": "dhcp01", "dhcpScope": "10.0.0.0"}]


def _desired(**data) -> DesiredVM:
    data.setdefault("adapters", ADAPTERS)
    return DesiredVM.from_dict("vm1", data, "C:\\VMs")


def _seed_vm(hv, host="hv01", state="Off", disk=OS):
    vm = hv.add_vm("vm1", host, state=state)
    vm["hard_disks"].append({"path": disk, "controller_type": "SCSI", "controller_number": 0, "controller_location": 0})
    hv.add_vhd(disk, 100 * GB)
    hv.seed_adapter(vm["id"], "eth0", mac="00155D000042")
    return vm


@pytest.fixture
def controller_for(dhcp, directory, dns, retry):
    def _make(hv, confirm=None, provisioning=None):
        return DecommissionController(
            hv,
            provisioning or ProvisioningDispatcher({}),
            retry,
            confirm=confirm,
            dhcp=DhcpReservationManager(dhcp),
            directory=directory,
            dns=dns,
            dns_zone="example.com",
        )

    return _make


class TestDecommission:
    """Tests for DecommissionController.decommission."""

    def test_clustered_vm_full_teardown(self, clustered_hv, controller_for, dhcp, directory, dns, caplog):
        """Test the VM, its role, disk, directory and network objects are all removed."""
        hv = clustered_hv
        vm = _seed_vm(hv, state="Running", disk=CSV_DISK)
        hv.add_cluster_role("hv01", "HVCLUSTER", vm["id"])
        hv.csv_paths = ["C:\\ClusterStorage\\Volume1"]
        hv.reset()
        dhcp.seed("dhcp01", "10.0.0.0", "10.0.0.5", CID)
        directory.seed("vm1")
        dns.seed("example.com", "vm1", "A")
        dns.seed("example.com", "vm1", "AAAA")
        dns.seed("example.com", "vm1", "TXT")

        resolution = TopologyResolver(hv).resolve("vm1", "hv01")
        controller_for(hv).decommission(
            _desired(), resolution, ReconcileOptions(force=True, remove_network_objects=True)
        )

        assert [name for name, _ in hv.calls] == [
            "remove_cluster_group",
            "stop_vm",
            "remove_vm",
            "move_csv_owner",
            "remove_item",
            "remove_empty_directory",
        ]
        assert hv.vms == {}
        assert hv.groups == {}
        assert hv.vhds == {}
        assert hv.called("move_csv_owner") == [(CSV_DISK, "hv01")]
        assert dhcp.reservations == {}
        assert directory.computers == {}
        assert dns.called("remove_records") == [
            ("example.com", "vm1", "A"),
            ("example.com", "vm1", "AAAA"),
        ]
        assert "Unexpected record type found" in caplog.text

    def test_network_objects_kept_by_default(self, hv, controller_for, dhcp, directory):
        _seed_vm(hv)
        dhcp.seed("dhcp01", "10.0.0.0", "10.0.0.5", CID)
        directory.seed("vm1")

        controller_for(hv).decommission(_desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions())

        assert hv.vms == {}
        assert dhcp.calls == []
        assert directory.calls == []

    def test_running_vm_not_turned_off_without_consent(self, hv, controller_for):
        vm = _seed_vm(hv, state="Running")

        with pytest.raises(PreconditionFailedError, match="--force"):
            controller_for(hv).decommission(
                _desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions()
            )

        assert hv.calls == []
        assert vm["id"] in hv.vms

    def test_running_vm_turned_off_when_confirmed(self, hv, controller_for):
        _seed_vm(hv, state="Running")

        controller_for(hv, confirm=AllowAll()).decommission(
            _desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions()
        )

        assert hv.called("stop_vm")
        assert hv.vms == {}

    def test_preserve_hard_drives(self, hv, controller_for):
        """Test disks and the directory holding them survive."""
        _seed_vm(hv)

        controller_for(hv).decommission(
            _desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions(preserve_hard_drives=True)
        )

        assert [name for name, _ in hv.calls] == ["remove_vm"]
        assert OS.casefold() in hv.vhds

    def test_attached_disk_dismounted(self, hv, controller_for):
        _seed_vm(hv)
        hv.vhds[OS.casefold()]["attached"] = True

        controller_for(hv).decommission(_desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions())

        assert hv.called("dismount_vhd") == [(OS,)]
        assert hv.called("remove_item") == [(OS,)]

    def test_absent_vm_still_cleans_network_objects(self, hv, controller_for, dhcp, caplog):
        dhcp.seed("dhcp01", "10.0.0.0", "10.0.0.5", CID)

        controller_for(hv).decommission(
            _desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions(remove_network_objects=True)
        )

        assert hv.calls == []
        assert dhcp.reservations == {}
        assert "not found" in caplog.text

    def test_snapshots_removed_and_merge_awaited(self, hv, controller_for, sleeps):
        vm = _seed_vm(hv)
        vm["snapshots"] = ["before-patch"]
        hv.merge_polls = 2

        controller_for(hv).decommission(_desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions())

        assert hv.calls[0] == ("remove_snapshots", (vm["id"],))
        assert sleeps == [2.0, 4.0]
        assert hv.vms == {}

    def test_merge_never_finishes(self, hv, controller_for):
        vm = _seed_vm(hv)
        hv.merge_polls = 100

        with pytest.raises(PreconditionFailedError, match="merge"):
            controller_for(hv).decommission(
                _desired(), TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions()
            )

        assert vm["id"] in hv.vms

    def test_deployment_registration_removed(self, hv, wds, controller_for):
        vm = _seed_vm(hv)
        wds.clients.append({"device_id": vm["bios_guid"], "device_name": "vm1"})
        provisioning = ProvisioningDispatcher({DeploymentMethod.WDS: WdsProvisioner(hv, wds)})
        desired = _desired(deploymentMethod="WDS", wdsServer="wds01", unattendPath="x.xml")

        controller_for(hv, provisioning=provisioning).decommission(
            desired, TopologyResolver(hv).resolve("vm1", "hv01"), ReconcileOptions()
        )

        assert wds.clients == []

    def test_dns_zone_from_options(self, hv, controller_for, dns):
        dns.seed("corp.example.com", "vm1", "A")

        controller_for(hv).decommission(
            _desired(),
            TopologyResolver(hv).resolve("vm1", "hv01"),
            ReconcileOptions(remove_network_objects=True, dns_zone="corp.example.com"),
        )

        assert dns.records == []
