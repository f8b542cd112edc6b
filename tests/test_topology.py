"""Tests for topology module."""

import pytest

from hyperv_provisioner.exceptions import AmbiguousVMError
from hyperv_provisioner.topology import TopologyResolver


class TestTopology:
    def test_standalone_host(self, hv):
        topology = TopologyResolver(hv).topology("hv01")
        assert topology.clustered is False
        assert topology.candidates == ["hv01"]

    def test_cluster_node(self, clustered_hv):
        topology = TopologyResolver(clustered_hv).topology("hv01")
        assert topology.cluster_name == "HVCLUSTER"
        assert topology.candidates == ["hv01", "hv02"]


class TestResolve:
    """Tests for TopologyResolver.resolve."""

    def test_found_on_named_host(self, hv):
        vm = hv.add_vm("vm1", "hv01", state="Running")

        resolution = TopologyResolver(hv).resolve("vm1", "hv01")

        assert resolution.found
        assert resolution.host == "hv01"
        assert resolution.vm.id == vm["id"]
        assert resolution.vm.running
        assert resolution.clustered is False

    def test_lookup_is_case_insensitive(self, hv):
        hv.add_vm("VM1", "hv01")
        assert TopologyResolver(hv).resolve("vm1", "hv01").found

    def test_ambiguous_across_cluster_nodes(self, clustered_hv):
        """Test a name on two nodes fails before anything is changed."""
        clustered_hv.add_vm("vm1", "hv01")
        clustered_hv.add_vm("vm1", "hv02")

        with pytest.raises(AmbiguousVMError) as exc_info:
            TopologyResolver(clustered_hv).resolve("vm1", "hv01")

        assert exc_info.value.hosts == ["hv01", "hv02"]
        assert clustered_hv.calls == []

    def test_rehomes_to_owning_node(self, clustered_hv, caplog):
        """Test a VM found on another node is resolved on that node."""
        vm = clustered_hv.add_vm("vm1", "hv02")
        clustered_hv.add_cluster_role("hv02", "HVCLUSTER", vm["id"])

        resolution = TopologyResolver(clustered_hv).resolve("vm1", "hv01")

        assert resolution.host == "hv02"
        assert resolution.vm.host == "hv02"
        assert resolution.topology.host == "hv02"
        assert resolution.clustered
        assert resolution.vm.cluster_group == "vm1"
        assert "instead of hv01" in caplog.text

    def test_clustered_vm_without_role(self, clustered_hv):
        clustered_hv.add_vm("vm1", "hv01")
        resolution = TopologyResolver(clustered_hv).resolve("vm1", "hv01")
        assert resolution.clustered
        assert resolution.vm.cluster_group is None

    def test_not_found_places_on_named_host(self, clustered_hv):
        resolution = TopologyResolver(clustered_hv).resolve("vm1", "hv02")

        assert resolution.found is False
        assert resolution.host == "hv02"
        assert resolution.clustered

    def test_default_hosts_are_searched(self, hv):
        """Test a record without a host is looked up on the configured hosts."""
        hv.add_vm("vm1", "hv03")

        resolution = TopologyResolver(hv, ["hv01", "hv03"]).resolve("vm1")

        assert resolution.host == "hv03"

    def test_not_found_on_several_defaults_has_no_placement(self, hv):
        """Test there is no guessing which of several hosts should receive a new VM."""
        resolution = TopologyResolver(hv, ["hv01", "hv03"]).resolve("vm1")

        assert resolution.found is False
        assert resolution.host is None
        assert resolution.topology is None

    @pytest.mark.parametrize("defaults", [["hv01"], []])
    def test_hostless_record_is_never_placed(self, hv, defaults):
        """Test a record without a host only finds existing VMs, even with a single candidate host."""
        resolution = TopologyResolver(hv, defaults).resolve("vm1")

        assert resolution.found is False
        assert resolution.host is None
        assert resolution.topology is None

    def test_local_host_when_nothing_configured(self, hv):
        hv.add_vm("vm1", "localhost")
        resolution = TopologyResolver(hv).resolve("vm1")
        assert resolution.host == "localhost"
        assert resolution.found
