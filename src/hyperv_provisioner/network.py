"""
Network adapters: switch binding, VLAN/isolation, MAC addresses and DHCP reservations.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from hyperv_provisioner.collaborators import DhcpClient
from hyperv_provisioner.exceptions import PreconditionFailedError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import NULL_MAC, DesiredNetworkAdapter, DesiredVM, LiveVM, VlanMode, normalize_mac

logger = logging.getLogger(__name__)


def derive_mac(prefix: str, ip_address: str) -> str:
    """Prefix followed by the four IP octets in hex: ('0015', '192.168.1.10') -> '0015C0A8010A'."""
    octets = ipaddress.IPv4Address(ip_address).packed
    return (prefix + "".join(f"{octet:02X}" for octet in octets)).upper()


def client_id(mac: str) -> str:
    """DHCP client id for a MAC: lower-case octets joined by dashes."""
    mac = normalize_mac(mac).lower()
    return "-".join(mac[i : i + 2] for i in range(0, 12, 2))


def expand_vlan_list(value: Optional[str]) -> Set[int]:
    """'10-12,20' -> {10, 11, 12, 20}."""
    ids: Set[int] = set()
    for part in (value or "").replace(" ", "").split(","):
        if not part:
            continue
        if "-" in part:
            low, high = part.split("-", 1)
            ids.update(range(int(low), int(high) + 1))
        else:
            ids.add(int(part))
    return ids


@dataclass(frozen=True)
class VlanState:
    """Tag mode plus isolation mode of an adapter."""

    mode: str = "Untagged"
    access_id: int = 0
    native_id: int = 0
    allowed_ids: frozenset = frozenset()
    isolation: str = "None"
    isolation_id: int = 0

    @classmethod
    def desired(cls, adapter: DesiredNetworkAdapter) -> "VlanState":
        vlan_id = adapter.vlan_id or 0
        if adapter.vlan_mode == VlanMode.ACCESS:
            return cls(mode="Access", access_id=vlan_id)
        if adapter.vlan_mode == VlanMode.TRUNK:
            allowed = expand_vlan_list(adapter.vlan_id_list) or {vlan_id}
            return cls(mode="Trunk", native_id=vlan_id, allowed_ids=frozenset(allowed))
        if adapter.vlan_mode == VlanMode.ISOLATION:
            return cls(isolation="Vlan", isolation_id=vlan_id)
        return cls()

    @classmethod
    def live(cls, record: Dict[str, Any]) -> "VlanState":
        vlan = record.get("vlan") or {}
        isolation = record.get("isolation") or {}
        mode = vlan.get("mode") or "Untagged"
        iso_mode = "Vlan" if (isolation.get("mode") or "None") == "Vlan" else "None"
        return cls(
            mode=mode,
            access_id=int(vlan.get("access_id") or 0) if mode == "Access" else 0,
            native_id=int(vlan.get("native_id") or 0) if mode == "Trunk" else 0,
            allowed_ids=frozenset(expand_vlan_list(vlan.get("allowed_ids"))) if mode == "Trunk" else frozenset(),
            isolation=iso_mode,
            isolation_id=int(isolation.get("default_id") or 0) if iso_mode == "Vlan" else 0,
        )

    def tag_settings(self) -> tuple:
        return self.mode, self.access_id, self.native_id, self.allowed_ids

    def isolation_settings(self) -> tuple:
        return self.isolation, self.isolation_id

    def allowed_list(self) -> str:
        return ",".join(str(i) for i in sorted(self.allowed_ids))


class NetworkReconciler:
    """Converges every desired adapter of a VM, identified by adapter name."""

    def __init__(
        self,
        hv: HyperVClient,
        dhcp: Optional["DhcpReservationManager"] = None,
        default_mac_prefix: Optional[str] = None,
    ):
        self.hv = hv
        self.dhcp = dhcp
        self.default_mac_prefix = default_mac_prefix

    def ensure_adapters(self, vm: LiveVM, desired: DesiredVM) -> List[Dict[str, Any]]:
        adapters = [self.ensure_adapter(vm, adapter) for adapter in desired.adapters]
        wanted = {a.name.casefold() for a in desired.adapters}
        for extra in self.hv.get_adapters(vm.host, vm.id):
            if extra["name"].casefold() not in wanted:
                logger.warning(f"VM {vm.name}: adapter {extra['name']} is not in the desired state; left in place")
        return adapters

    def ensure_adapter(self, vm: LiveVM, adapter: DesiredNetworkAdapter) -> Dict[str, Any]:
        """Return the live adapter record after converging it."""
        record = self._ensure_exists(vm, adapter)
        self._ensure_options(vm, adapter, record)
        self._ensure_switch(vm, adapter, record)
        self._ensure_vlan(vm, adapter, record)
        mac = self._ensure_mac(vm, adapter, record)
        record["mac"] = mac

        if adapter.dhcp is not None and self.dhcp is not None:
            self.dhcp.ensure(vm.name, adapter, mac)
        return record

    def _ensure_exists(self, vm: LiveVM, adapter: DesiredNetworkAdapter) -> Dict[str, Any]:
        matches = [a for a in self.hv.get_adapters(vm.host, vm.id) if a["name"].casefold() == adapter.name.casefold()]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            logger.warning(f"VM {vm.name}: {len(matches)} adapters named {adapter.name}; removing all and recreating")
            for duplicate in matches:
                self.hv.remove_adapter(vm.host, vm.id, duplicate["id"])
        logger.info(f"🌐 VM {vm.name}: adding adapter {adapter.name}")
        created = self.hv.add_adapter(vm.host, vm.id, adapter.name)
        return {
            "id": created["id"],
            "name": created["name"],
            "switch": None,
            "mac": created.get("mac") or NULL_MAC,
            "device_naming": False,
            "mac_spoofing": False,
            "teaming": False,
            "vlan": {"mode": "Untagged"},
            "isolation": {"mode": "None"},
        }

    def _ensure_options(self, vm: LiveVM, adapter: DesiredNetworkAdapter, record: Dict[str, Any]) -> None:
        wanted = {"device_naming": True, "mac_spoofing": adapter.mac_spoofing, "teaming": adapter.teaming}
        changes = {k: v for k, v in wanted.items() if bool(record.get(k)) != v}
        if changes:
            logger.info(f"🌐 VM {vm.name}: adapter {adapter.name} options {changes}")
            self.hv.set_adapter_options(vm.host, vm.id, record["id"], **changes)

    def _ensure_switch(self, vm: LiveVM, adapter: DesiredNetworkAdapter, record: Dict[str, Any]) -> None:
        current = record.get("switch") or None
        if adapter.switch:
            if current is None or current.casefold() != adapter.switch.casefold():
                logger.info(f"🌐 VM {vm.name}: connecting {adapter.name} to {adapter.switch}")
                self.hv.connect_adapter(vm.host, vm.id, record["id"], adapter.switch)
        elif current:
            logger.info(f"🌐 VM {vm.name}: disconnecting {adapter.name} from {current}")
            self.hv.disconnect_adapter(vm.host, vm.id, record["id"])

    def _ensure_vlan(self, vm: LiveVM, adapter: DesiredNetworkAdapter, record: Dict[str, Any]) -> None:
        """
        Apply the tag/isolation pair for the adapter's VLAN mode.

        Isolation is cleared before tagging is changed and set after it, since
        the host rejects tagging changes on an isolated adapter.
        """
        want = VlanState.desired(adapter)
        have = VlanState.live(record)
        if want == have:
            return
        logger.info(f"🏷️  VM {vm.name}: adapter {adapter.name} VLAN mode {adapter.vlan_mode.value}")

        if have.isolation_settings() != want.isolation_settings() and have.isolation == "Vlan":
            self.hv.set_adapter_isolation(vm.host, vm.id, record["id"], "None")
            have = VlanState(*have.tag_settings())

        if have.tag_settings() != want.tag_settings():
            self.hv.set_adapter_vlan(
                vm.host,
                vm.id,
                record["id"],
                want.mode,
                access_id=want.access_id if want.mode == "Access" else None,
                native_id=want.native_id if want.mode == "Trunk" else None,
                allowed_ids=want.allowed_list() if want.mode == "Trunk" else None,
            )

        if have.isolation_settings() != want.isolation_settings():
            self.hv.set_adapter_isolation(
                vm.host, vm.id, record["id"], want.isolation, want.isolation_id if want.isolation == "Vlan" else None
            )

    def _ensure_mac(self, vm: LiveVM, adapter: DesiredNetworkAdapter, record: Dict[str, Any]) -> str:
        """
        Explicit MAC, then prefix + IP, then the host counter for a null MAC.

        An existing non-null MAC with nothing explicit desired is left alone.
        """
        current = normalize_mac(record.get("mac") or NULL_MAC)
        prefix = adapter.mac_prefix or self.default_mac_prefix

        if adapter.mac_address:
            wanted = adapter.mac_address
        elif adapter.ip_address and prefix:
            wanted = derive_mac(prefix, adapter.ip_address)
        elif current == NULL_MAC:
            wanted = self.allocate_mac(vm.host)
        else:
            return current

        if wanted != current:
            logger.info(f"🔖 VM {vm.name}: adapter {adapter.name} MAC {current} -> {wanted}")
            self.hv.set_adapter_mac(vm.host, vm.id, record["id"], wanted)
        return wanted

    def allocate_mac(self, host: str) -> str:
        """
        Take the next address from the host's MAC pool.

        The pool minimum is incremented and written back; the new minimum is
        the allocated address. Read-increment-write with no compare-and-swap,
        so callers must not allocate on the same host concurrently.

        Raises:
            PreconditionFailedError: If the low byte would overflow or the pool is exhausted
        """
        pool = self.hv.get_mac_pool(host)
        minimum = int(normalize_mac(pool["minimum"]), 16)
        maximum = int(normalize_mac(pool["maximum"]), 16)
        if minimum & 0xFF == 0xFF:
            raise PreconditionFailedError(f"MAC counter on {host} would overflow past {pool['minimum']}")
        allocated = minimum + 1
        if allocated > maximum:
            raise PreconditionFailedError(f"MAC pool on {host} is exhausted ({pool['minimum']}-{pool['maximum']})")
        mac = f"{allocated:012X}"
        self.hv.set_mac_pool_minimum(host, mac)
        logger.info(f"🔖 Allocated MAC {mac} from the pool on {host}")
        return mac


class DhcpReservationManager:
    """Keeps one reservation per adapter, keyed by IP address and client id."""

    def __init__(self, client: DhcpClient):
        self.client = client

    @staticmethod
    def _same_client(a: Optional[str], b: str) -> bool:
        return (a or "").replace("-", "").replace(":", "").lower() == b.replace("-", "").lower()

    def ensure(self, vm_name: str, adapter: DesiredNetworkAdapter, mac: str) -> bool:
        """
        Create or repair the reservation for adapter.

        A reservation holding the IP for another client, and reservations
        holding the client id for another IP, are deleted independently.

        Returns:
            True when anything was written
        """
        dhcp = adapter.dhcp
        cid = client_id(mac)
        changed = False

        by_ip = self.client.get_reservation_by_ip(dhcp.server, dhcp.scope, dhcp.ip_address)
        if by_ip and not self._same_client(by_ip.get("client_id"), cid):
            logger.info(f"📇 {dhcp.server}: removing reservation {dhcp.ip_address} held by {by_ip.get('client_id')}")
            self.client.remove_reservation(dhcp.server, dhcp.scope, dhcp.ip_address)
            by_ip = None
            changed = True

        for stale in self.client.get_reservations_by_client_id(dhcp.server, dhcp.scope, cid):
            if stale["ip"] != dhcp.ip_address:
                logger.info(f"📇 {dhcp.server}: removing reservation {stale['ip']} for client {cid}")
                self.client.remove_reservation(dhcp.server, dhcp.scope, stale["ip"])
                changed = True

        if by_ip is None:
            logger.info(f"📇 {dhcp.server}: reserving {dhcp.ip_address} for {vm_name} ({cid})")
            self.client.add_reservation(dhcp.server, dhcp.scope, dhcp.ip_address, cid, vm_name)
            changed = True

        if dhcp.router and dhcp.router not in self.client.get_router(dhcp.server, dhcp.ip_address):
            logger.info(f"📇 {dhcp.server}: setting router {dhcp.router} for {dhcp.ip_address}")
            self.client.set_router(dhcp.server, dhcp.ip_address, dhcp.router)
            changed = True

        if changed:
            self.replicate(dhcp.server, dhcp.scope)
        return changed

    def remove(self, adapter: DesiredNetworkAdapter, mac: Optional[str]) -> bool:
        """Delete reservations for the adapter's IP and, when known, its client id."""
        dhcp = adapter.dhcp
        removed = False
        if self.client.get_reservation_by_ip(dhcp.server, dhcp.scope, dhcp.ip_address):
            logger.info(f"📇 {dhcp.server}: removing reservation {dhcp.ip_address}")
            self.client.remove_reservation(dhcp.server, dhcp.scope, dhcp.ip_address)
            removed = True
        if mac and normalize_mac(mac) != NULL_MAC:
            for stale in self.client.get_reservations_by_client_id(dhcp.server, dhcp.scope, client_id(mac)):
                if stale["ip"] != dhcp.ip_address:
                    logger.info(f"📇 {dhcp.server}: removing reservation {stale['ip']}")
                    self.client.remove_reservation(dhcp.server, dhcp.scope, stale["ip"])
                    removed = True
        if removed:
            self.replicate(dhcp.server, dhcp.scope)
        return removed

    def replicate(self, server: str, scope: str) -> None:
        failover = self.client.get_failover(server, scope)
        if failover:
            logger.info(f"🔁 Replicating scope {scope} from {server} to {failover.get('partner')}")
            self.client.replicate(server, scope)
