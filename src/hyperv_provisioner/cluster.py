"""
Failover-cluster role registration and placement for a VM.
"""

import logging
from typing import Any, Dict, Optional

from hyperv_provisioner.config import ReconcileOptions
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import DesiredVM, LiveVM

logger = logging.getLogger(__name__)

ONLINE_STATES = {"online", "partialonline"}


class ClusterReconciler:
    """Registers the VM as a cluster group and applies priority, affinity and owners."""

    def __init__(self, hv: HyperVClient):
        self.hv = hv

    def ensure_membership(self, vm: LiveVM, cluster: str, desired: DesiredVM) -> Dict[str, Any]:
        """Return the VM's cluster group, registering the VM as a role when absent."""
        group = self.hv.get_cluster_group(vm.host, cluster, vm.id)
        if group is None:
            logger.info(f"🏛️  Registering VM {vm.name} as a role in cluster {cluster}")
            group = self.hv.add_cluster_role(vm.host, cluster, vm.id)
        vm.cluster_group = group["name"]

        if desired.cluster_priority is not None and int(group.get("priority") or 0) != desired.cluster_priority:
            logger.info(f"🏛️  Group {group['name']}: priority {group.get('priority')} -> {desired.cluster_priority}")
            self.hv.set_cluster_group_priority(vm.host, cluster, group["name"], desired.cluster_priority)
            group["priority"] = desired.cluster_priority

        self.ensure_affinity_rules(vm, cluster, group["name"], desired)
        self.ensure_preferred_owner(vm, cluster, group["name"])
        return group

    def ensure_affinity_rules(self, vm: LiveVM, cluster: str, group: str, desired: DesiredVM) -> None:
        if not desired.affinity_rules:
            return
        existing = self.hv.get_affinity_rules(vm.host, cluster)
        rules = {name.casefold(): (name, members) for name, members in existing.items()}
        for wanted in desired.affinity_rules:
            if wanted.casefold() not in rules:
                logger.warning(f"Affinity rule {wanted} does not exist in cluster {cluster}; skipped")
                continue
            name, members = rules[wanted.casefold()]
            if any(m.casefold() == group.casefold() for m in members):
                continue
            logger.info(f"🏛️  Adding group {group} to affinity rule {name}")
            self.hv.add_group_to_affinity_rule(vm.host, cluster, name, group)

    def ensure_preferred_owner(self, vm: LiveVM, cluster: str, group: str) -> None:
        owners = self.hv.get_preferred_owners(vm.host, cluster, group)
        if [o.casefold() for o in owners] == [vm.host.casefold()]:
            return
        logger.info(f"🏛️  Group {group}: preferred owner {vm.host}")
        self.hv.set_preferred_owners(vm.host, cluster, group, [vm.host])

    def ensure_power(self, vm: LiveVM, cluster: str, options: ReconcileOptions) -> Optional[str]:
        """
        Start an offline group, or restart an online one on the best node when forced.

        Returns:
            The action taken ('started', 'restarted') or None
        """
        group = self.hv.get_cluster_group(vm.host, cluster, vm.id)
        if group is None:
            logger.warning(f"VM {vm.name} has no cluster group; power state not managed")
            return None
        name = group["name"]

        if str(group.get("state", "")).casefold() in ONLINE_STATES:
            if not options.force_restart:
                logger.info(f"▶️  Group {name} is online; left running")
                return None
            logger.info(f"🔄 Restarting group {name}")
            self.hv.stop_cluster_group(vm.host, cluster, name)
            owner = self.hv.move_cluster_group(vm.host, cluster, name)
            if owner:
                vm.host = owner
            self.hv.start_cluster_group(vm.host, cluster, name)
            logger.info(f"✅ Group {name} restarted on {vm.host}")
            return "restarted"

        if options.skip_start:
            logger.info(f"⏸️  Group {name} is offline; start skipped")
            return None
        logger.info(f"▶️  Starting group {name}")
        self.hv.start_cluster_group(vm.host, cluster, name)
        return "started"
