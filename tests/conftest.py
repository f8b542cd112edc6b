"""Shared test fixtures and configuration for hyperv_provisioner tests."""

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from fakes import FakeDhcp, FakeDirectory, FakeDns, FakeHyperV, FakeSccm, FakeWds
from hyperv_provisioner.cluster import ClusterReconciler
from hyperv_provisioner.compute import ComputeReconciler
from hyperv_provisioner.config import ReconcileOptions
from hyperv_provisioner.decommission import DecommissionController
from hyperv_provisioner.engine import ReconciliationEngine
from hyperv_provisioner.models import DeploymentMethod, DesiredStateStore
from hyperv_provisioner.network import DhcpReservationManager, NetworkReconciler
from hyperv_provisioner.policy import DenyAll, RetryPolicy
from hyperv_provisioner.provisioning import (
    IsoProvisioner,
    ProvisioningDispatcher,
    SccmProvisioner,
    VhdProvisioner,
    WdsProvisioner,
)
from hyperv_provisioner.storage import StorageReconciler
from hyperv_provisioner.topology import TopologyResolver

SYSTEM_SETTINGS = {"BIOSNumLock": True, "LockOnDisconnect": True, "AutomaticSnapshotsEnabled": False}


@pytest.fixture
def hv():
    """Standalone fake host."""
    return FakeHyperV()


@pytest.fixture
def clustered_hv():
    """Fake two-node cluster."""
    return FakeHyperV(clusters={"HVCLUSTER": ["hv01", "hv02"]})


@pytest.fixture
def dhcp():
    return FakeDhcp()


@pytest.fixture
def wds():
    return FakeWds()


@pytest.fixture
def sccm():
    return FakeSccm()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def dns():
    return FakeDns()


@pytest.fixture
def sleeps():
    """Delays requested by retry policies."""
    return []


@pytest.fixture
def retry(sleeps):
    """Retry policy that records delays instead of sleeping."""
    return RetryPolicy(max_attempts=5, base_delay=2.0, multiplier=2.0, max_delay=None, sleep=sleeps.append)


@pytest.fixture
def write_store(tmp_path):
    """Write a declarative store and return its path."""

    def _write(entries: Dict[str, Any]) -> Path:
        path = tmp_path / "vms.json"
        path.write_text(json.dumps(entries), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_engine(dhcp, wds, sccm, directory, dns, retry):
    """Build a ReconciliationEngine wired to fakes."""

    def _make(hv, entries, options=None, confirm=None, hosts=None, dns_zone="example.com"):
        store = DesiredStateStore(entries=entries, default_path="C:\\VMs")
        confirm = confirm or DenyAll()
        manager = DhcpReservationManager(dhcp)
        provisioning = ProvisioningDispatcher(
            {
                DeploymentMethod.ISO: IsoProvisioner(hv),
                DeploymentMethod.WDS: WdsProvisioner(hv, wds),
                DeploymentMethod.SCCM: SccmProvisioner(hv, sccm, retry),
                DeploymentMethod.VHD: VhdProvisioner(hv, confirm=confirm),
            }
        )
        return ReconciliationEngine(
            store=store,
            hv=hv,
            topology=TopologyResolver(hv, hosts),
            compute=ComputeReconciler(hv, SYSTEM_SETTINGS),
            storage=StorageReconciler(hv, confirm),
            network=NetworkReconciler(hv, manager),
            cluster=ClusterReconciler(hv),
            provisioning=provisioning,
            decommissioner=DecommissionController(
                hv,
                provisioning,
                retry,
                confirm=confirm,
                dhcp=manager,
                directory=directory,
                dns=dns,
                dns_zone=dns_zone,
            ),
            options=options or ReconcileOptions(),
        )

    return _make
