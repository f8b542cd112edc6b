"""
Sequential reconciliation of VMs named on the command line.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from hyperv_provisioner.broker import ExecutionContext
from hyperv_provisioner.cluster import ClusterReconciler
from hyperv_provisioner.collaborators import DhcpClient, DirectoryClient, DnsClient, SccmClient, WdsClient
from hyperv_provisioner.compute import ComputeReconciler
from hyperv_provisioner.config import Config, ReconcileOptions
from hyperv_provisioner.decommission import DecommissionController
from hyperv_provisioner.exceptions import ProvisionerError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import DeploymentMethod, DesiredStateStore, DesiredVM, LiveVM, PowerState
from hyperv_provisioner.network import DhcpReservationManager, NetworkReconciler
from hyperv_provisioner.policy import ConfirmationPolicy, DenyAll, RetryPolicy
from hyperv_provisioner.provisioning import (
    IsoProvisioner,
    ProvisioningDispatcher,
    SccmProvisioner,
    VhdProvisioner,
    WdsProvisioner,
)
from hyperv_provisioner.storage import StorageReconciler
from hyperv_provisioner.topology import Resolution, TopologyResolver

logger = logging.getLogger(__name__)


@dataclass
class VMResult:
    """Outcome of one VM's pass."""

    name: str
    success: bool
    step: str = ""
    message: str = ""
    host: Optional[str] = None


class ReconciliationEngine:
    """Runs the reconcilers for each requested VM in dependency order."""

    def __init__(
        self,
        store: DesiredStateStore,
        hv: HyperVClient,
        topology: TopologyResolver,
        compute: ComputeReconciler,
        storage: StorageReconciler,
        network: NetworkReconciler,
        cluster: ClusterReconciler,
        provisioning: ProvisioningDispatcher,
        decommissioner: DecommissionController,
        options: Optional[ReconcileOptions] = None,
    ):
        self.store = store
        self.hv = hv
        self.topology = topology
        self.compute = compute
        self.storage = storage
        self.network = network
        self.cluster = cluster
        self.provisioning = provisioning
        self.decommissioner = decommissioner
        self.options = options or ReconcileOptions()
        self.current_step = ""

    @classmethod
    def build(
        cls,
        context: ExecutionContext,
        store: DesiredStateStore,
        options: Optional[ReconcileOptions] = None,
        confirm: Optional[ConfirmationPolicy] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> "ReconciliationEngine":
        """Wire the reconcilers and collaborator clients onto one execution context."""
        options = options or ReconcileOptions()
        confirm = confirm or DenyAll()
        retry = retry or Config.retry_policy()
        hv = HyperVClient(context)
        dhcp = DhcpReservationManager(DhcpClient(context))
        provisioning = ProvisioningDispatcher(
            {
                DeploymentMethod.ISO: IsoProvisioner(hv),
                DeploymentMethod.WDS: WdsProvisioner(hv, WdsClient(context)),
                DeploymentMethod.SCCM: SccmProvisioner(hv, SccmClient(context), retry),
                DeploymentMethod.VHD: VhdProvisioner(
                    hv,
                    confirm=confirm,
                    installed_threshold_bytes=Config.VHD_INSTALLED_THRESHOLD_BYTES,
                    credentials={
                        "admin_password": Config.LOCAL_ADMIN_PASSWORD,
                        "domain_join_user": Config.DOMAIN_JOIN_USER,
                        "domain_join_password": Config.DOMAIN_JOIN_PASSWORD,
                    },
                ),
            }
        )
        return cls(
            store=store,
            hv=hv,
            topology=TopologyResolver(hv, Config.get_hosts()),
            compute=ComputeReconciler(hv, Config.desired_system_settings()),
            storage=StorageReconciler(hv, confirm),
            network=NetworkReconciler(hv, dhcp, Config.MAC_PREFIX_DEFAULT),
            cluster=ClusterReconciler(hv),
            provisioning=provisioning,
            decommissioner=DecommissionController(
                hv,
                provisioning,
                retry,
                confirm=confirm,
                dhcp=dhcp,
                directory=DirectoryClient(context),
                dns=DnsClient(context),
                ad_server=Config.AD_SERVER,
                dns_server=Config.DNS_SERVER,
                dns_zone=Config.DNS_ZONE,
            ),
            options=options,
        )

    @contextmanager
    def step(self, vm_name: str, description: str) -> Iterator[None]:
        """Log a progress line before and after a step and remember it for failure reports."""
        self.current_step = description
        logger.info(f"▶️  [{vm_name}] {description}")
        yield
        logger.info(f"✔️  [{vm_name}] {description} done")

    def provision(self, names: Iterable[str]) -> List[VMResult]:
        return [self._run(name, self.provision_vm) for name in names]

    def decommission(self, names: Iterable[str]) -> List[VMResult]:
        return [self._run(name, self.decommission_vm) for name in names]

    def _run(self, name: str, action) -> VMResult:
        self.current_step = "load desired state"
        try:
            host = action(name)
        except ProvisionerError as e:
            logger.error(f"❌ [{name}] failed during '{self.current_step}': {e}")
            return VMResult(name=name, success=False, step=self.current_step, message=str(e))
        logger.info(f"✅ [{name}] complete")
        return VMResult(name=name, success=True, step=self.current_step, host=host)

    def _resolve(self, desired: DesiredVM) -> Resolution:
        with self.step(desired.name, "resolve topology"):
            return self.topology.resolve(desired.name, desired.host)

    def provision_vm(self, name: str) -> Optional[str]:
        """Converge one VM; returns the host it ended up on."""
        desired = self.store.get(name)
        resolution = self._resolve(desired)

        with self.step(name, "compute"):
            vm = self.compute.ensure_vm(desired, resolution)
        with self.step(name, "storage"):
            self.storage.ensure_disks(vm, desired, preserve=self.options.preserve_hard_drives)
        with self.step(name, "network"):
            self.network.ensure_adapters(vm, desired)

        clustered = resolution.clustered and not desired.do_not_cluster
        if clustered:
            with self.step(name, "cluster membership"):
                self.cluster.ensure_membership(vm, resolution.topology.cluster_name, desired)

        if desired.deployment is not None and not self.options.skip_provisioning:
            with self.step(name, f"OS provisioning ({desired.deployment.method.value})"):
                self._refresh_state(vm)
                if vm.running:
                    logger.info(f"VM {name} is running; OS provisioning skipped")
                else:
                    self.provisioning.provision(vm, desired)

        with self.step(name, "power state"):
            if clustered:
                self.cluster.ensure_power(vm, resolution.topology.cluster_name, self.options)
            else:
                self.ensure_power(vm)
        return vm.host

    def decommission_vm(self, name: str) -> Optional[str]:
        desired = self.store.get(name)
        resolution = self._resolve(desired)
        with self.step(name, "decommission"):
            self.decommissioner.decommission(desired, resolution, self.options)
        return resolution.host

    def _refresh_state(self, vm: LiveVM) -> None:
        record = self.hv.get_vm(vm.host, vm.id)
        if record:
            vm.state = PowerState.parse(record["state"])

    def ensure_power(self, vm: LiveVM) -> Optional[str]:
        """Start a stopped standalone VM, or restart a running one when forced."""
        self._refresh_state(vm)
        if vm.running:
            if self.options.force_restart:
                logger.info(f"🔄 Restarting VM {vm.name}")
                self.hv.restart_vm(vm.host, vm.id)
                return "restarted"
            return None
        if self.options.skip_start:
            logger.info(f"⏸️  VM {vm.name} left {vm.state.value.lower()}; start skipped")
            return None
        logger.info(f"▶️  Starting VM {vm.name}")
        self.hv.start_vm(vm.host, vm.id)
        vm.state = PowerState.RUNNING
        return "started"
