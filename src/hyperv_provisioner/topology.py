"""
Locate VMs across standalone hosts and failover-cluster nodes.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from hyperv_provisioner.exceptions import AmbiguousVMError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import ClusterTopology, LiveVM

logger = logging.getLogger(__name__)

LOCAL_HOST = "localhost"


@dataclass
class Resolution:
    """Where a VM lives, or where it would be placed."""

    host: Optional[str]
    topology: Optional[ClusterTopology]
    vm: Optional[LiveVM] = None

    @property
    def found(self) -> bool:
        return self.vm is not None

    @property
    def clustered(self) -> bool:
        return self.topology is not None and self.topology.clustered


class TopologyResolver:
    """Finds the single host holding a VM, expanding clusters to their nodes."""

    def __init__(self, hv: HyperVClient, default_hosts: Optional[List[str]] = None):
        self.hv = hv
        self.default_hosts = list(default_hosts or [])

    def topology(self, host: str) -> ClusterTopology:
        """Query cluster membership of host; not cached between calls."""
        info = self.hv.get_cluster(host)
        topology = ClusterTopology(host=host, cluster_name=info["name"], nodes=info["nodes"])
        if topology.clustered:
            logger.debug(f"{host} is a member of cluster {topology.cluster_name} ({', '.join(topology.nodes)})")
        return topology

    def resolve(self, vm_name: str, host: Optional[str] = None) -> Resolution:
        """
        Search every candidate node for a VM named vm_name.

        With no host, the configured default hosts are searched (the local
        host when none are configured), but a VM that is not found there is
        never placed: the resolution has no host. A VM found on a node other
        than the one assumed re-homes the resolution to that node.

        Raises:
            AmbiguousVMError: If more than one host holds a VM with that name
        """
        seeds = [host] if host else (self.default_hosts or [LOCAL_HOST])
        topologies: Dict[str, ClusterTopology] = {}
        searched = set()
        matches: List[LiveVM] = []

        for seed in seeds:
            topology = self.topology(seed)
            for node in topology.candidates:
                key = node.casefold()
                if key in searched:
                    continue
                searched.add(key)
                topologies[key] = topology
                for record in self.hv.find_vms(node, vm_name):
                    vm = LiveVM.from_record(record, node)
                    vm.host = node
                    matches.append(vm)

        if len(matches) > 1:
            raise AmbiguousVMError(vm_name, [m.host for m in matches])

        if not matches:
            logger.info(f"🔍 VM {vm_name} not found on {', '.join(seeds)}")
            if host is None:
                return Resolution(host=None, topology=None)
            return Resolution(host=host, topology=topologies.get(host.casefold()) or self.topology(host))

        vm = matches[0]
        known = topologies[vm.host.casefold()]
        topology = ClusterTopology(host=vm.host, cluster_name=known.cluster_name, nodes=list(known.nodes))
        if host and vm.host.casefold() != host.casefold():
            logger.info(f"🔀 VM {vm_name} found on {vm.host} instead of {host}; using {vm.host}")
        else:
            logger.info(f"🔍 VM {vm_name} found on {vm.host} ({vm.state.value})")

        if topology.clustered:
            group = self.hv.get_cluster_group(vm.host, topology.cluster_name, vm.id)
            vm.cluster_group = group["name"] if group else None
        return Resolution(host=vm.host, topology=topology, vm=vm)
