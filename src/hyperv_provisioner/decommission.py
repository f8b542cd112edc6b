"""
Remove a VM and everything provisioning registered for it.
"""

import logging
from typing import Dict, List, Optional

from hyperv_provisioner.collaborators import DirectoryClient, DnsClient
from hyperv_provisioner.config import ReconcileOptions
from hyperv_provisioner.exceptions import PreconditionFailedError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import DesiredVM, LiveVM, PowerState
from hyperv_provisioner.network import DhcpReservationManager
from hyperv_provisioner.policy import ConfirmationPolicy, DenyAll, RetryPolicy
from hyperv_provisioner.provisioning import ProvisioningDispatcher
from hyperv_provisioner.topology import Resolution

logger = logging.getLogger(__name__)

DNS_RECORD_TYPES = ("A", "AAAA", "CNAME")
VM_SUBDIRECTORIES = ("Virtual Machines", "Snapshots", "Virtual Hard Disks")


def _parent(path: str) -> str:
    return path.rstrip("\\").rsplit("\\", 1)[0] if "\\" in path.rstrip("\\") else ""


class DecommissionController:
    """Tears a VM down in the reverse order it was built."""

    def __init__(
        self,
        hv: HyperVClient,
        provisioning: ProvisioningDispatcher,
        retry: RetryPolicy,
        confirm: Optional[ConfirmationPolicy] = None,
        dhcp: Optional[DhcpReservationManager] = None,
        directory: Optional[DirectoryClient] = None,
        dns: Optional[DnsClient] = None,
        ad_server: Optional[str] = None,
        dns_server: Optional[str] = None,
        dns_zone: Optional[str] = None,
    ):
        self.hv = hv
        self.provisioning = provisioning
        self.retry = retry
        self.confirm = confirm or DenyAll()
        self.dhcp = dhcp
        self.directory = directory
        self.dns = dns
        self.ad_server = ad_server
        self.dns_server = dns_server
        self.dns_zone = dns_zone

    def decommission(self, desired: DesiredVM, resolution: Resolution, options: ReconcileOptions) -> None:
        """
        Remove the VM, its disks and registrations.

        An absent VM is not an error; the optional network-object cleanup
        still runs for it.
        """
        vm = resolution.vm
        macs: Dict[str, str] = {}
        if vm is None:
            logger.warning(f"VM {desired.name} not found; nothing to remove on the host")
        else:
            macs = {a["name"].casefold(): a.get("mac") for a in self.hv.get_adapters(vm.host, vm.id)}
            self.remove_snapshots(vm)
            if resolution.clustered:
                self.remove_cluster_role(vm, resolution.topology.cluster_name)
            self.provisioning.deprovision(vm, desired)
            self.power_off(vm, options)
            disks = [d["path"] for d in self.hv.get_hard_disks(vm.host, vm.id) if d.get("path")]
            logger.info(f"🗑️  Removing VM {vm.name} from {vm.host}")
            self.hv.remove_vm(vm.host, vm.id)
            if options.preserve_hard_drives:
                logger.info(f"💾 Preserving {len(disks)} disk(s) of {vm.name}")
            else:
                cluster = resolution.topology.cluster_name if resolution.clustered else None
                for path in disks:
                    self.remove_disk(vm, path, cluster)
            self.remove_directories(vm, [] if options.preserve_hard_drives else disks)

        if options.remove_network_objects:
            self.remove_network_objects(desired, macs, options)

    def remove_snapshots(self, vm: LiveVM) -> None:
        snapshots = self.hv.get_snapshots(vm.host, vm.id)
        if snapshots:
            logger.info(f"📸 Removing {len(snapshots)} snapshot(s) of {vm.name}")
            self.hv.remove_snapshots(vm.host, vm.id)
        merged = self.retry.wait_until(
            lambda: not self.hv.is_merging(vm.host, vm.id), f"disk merge of {vm.name} to finish"
        )
        if not merged:
            raise PreconditionFailedError(f"VM {vm.name}: disk merge still in progress")

    def remove_cluster_role(self, vm: LiveVM, cluster: str) -> None:
        group = self.hv.get_cluster_group(vm.host, cluster, vm.id)
        if group is None:
            return
        logger.info(f"🏛️  Removing group {group['name']} from cluster {cluster}")
        self.hv.remove_cluster_group(vm.host, cluster, group["name"])

    def power_off(self, vm: LiveVM, options: ReconcileOptions) -> None:
        record = self.hv.get_vm(vm.host, vm.id)
        state = PowerState.parse(record["state"]) if record else vm.state
        if state == PowerState.OFF:
            return
        if not (options.force or self.confirm.confirm(f"Turn off {state.value.lower()} VM {vm.name}")):
            raise PreconditionFailedError(f"VM {vm.name} is {state.value}; not turned off without --force")
        logger.info(f"⏹️  Turning off VM {vm.name}")
        self.hv.stop_vm(vm.host, vm.id, turn_off=True)
        vm.state = PowerState.OFF

    def remove_disk(self, vm: LiveVM, path: str, cluster: Optional[str]) -> None:
        vhd = self.hv.get_vhd(vm.host, path)
        if vhd is None:
            logger.info(f"💾 {path} already gone")
            return
        if vhd.get("attached"):
            logger.info(f"💾 Dismounting {path}")
            self.hv.dismount_vhd(vm.host, path)
        if cluster and self.hv.move_csv_owner(vm.host, cluster, path, vm.host):
            logger.debug(f"Cluster shared volume holding {path} is owned by {vm.host}")
        logger.info(f"💾 Deleting {path}")
        self.hv.remove_item(vm.host, path)

    def remove_directories(self, vm: LiveVM, disks: List[str]) -> None:
        """Remove VM directories the host leaves behind, only when empty."""
        candidates = []
        if vm.path:
            candidates += [vm.path.rstrip("\\") + "\\" + sub for sub in VM_SUBDIRECTORIES]
        candidates += [_parent(p) for p in disks if _parent(p)]
        if vm.path:
            candidates.append(vm.path.rstrip("\\"))
        seen = set()
        for directory in candidates:
            if directory.casefold() in seen:
                continue
            seen.add(directory.casefold())
            if self.hv.remove_empty_directory(vm.host, directory):
                logger.info(f"📁 Removed empty directory {directory}")

    def remove_network_objects(
        self, desired: DesiredVM, macs: Dict[str, Optional[str]], options: ReconcileOptions
    ) -> None:
        if self.dhcp is not None:
            for adapter in desired.adapters:
                if adapter.dhcp is not None:
                    self.dhcp.remove(adapter, adapter.mac_address or macs.get(adapter.name.casefold()))

        if self.directory is not None:
            computer = self.directory.get_computer(self.ad_server, desired.name)
            if computer:
                logger.info(f"👤 Removing computer object {computer['distinguished_name']}")
                self.directory.remove_computer(self.ad_server, computer["distinguished_name"])

        zone = options.dns_zone or self.dns_zone
        if self.dns is not None and zone:
            removed = set()
            for record in self.dns.get_records(self.dns_server, zone, desired.name):
                record_type = str(record.get("type", "")).upper()
                if record_type not in DNS_RECORD_TYPES:
                    logger.warning(f"Unexpected record type found for {desired.name} in {zone}: {record_type}")
                    continue
                if record_type in removed:
                    continue
                logger.info(f"🌍 Removing {record_type} records for {desired.name} from {zone}")
                self.dns.remove_records(self.dns_server, zone, desired.name, record_type)
                removed.add(record_type)
