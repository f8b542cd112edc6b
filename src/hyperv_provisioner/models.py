"""Data models for desired and live VM state."""

import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from hyperv_provisioner.exceptions import StoreError, VMNotFoundError

logger = logging.getLogger(__name__)

NULL_MAC = "000000000000"
SCSI_CONTROLLER_LIMIT = 4
SCSI_LOCATION_LIMIT = 64

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024**2,
    "MB": 1024**2,
    "G": 1024**3,
    "GB": 1024**3,
    "T": 1024**4,
    "TB": 1024**4,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?B?)\s*$", re.IGNORECASE)
_MAC_RE = re.compile(r"^[0-9A-F]{12}$")
_VLAN_LIST_RE = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")


def parse_size(value: Union[int, str]) -> int:
    """Convert an int or a size string such as '100GB' or '512M' to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])


def normalize_mac(value: str) -> str:
    """Return a MAC address as 12 upper-case hex digits without separators."""
    mac = re.sub(r"[-:.\s]", "", value).upper()
    if not _MAC_RE.match(mac):
        raise ValueError(f"Invalid MAC address: {value!r}")
    return mac


class VlanMode(Enum):
    """Tagging discipline applied to an adapter."""

    UNTAGGED = "Untagged"
    ACCESS = "Access"
    TRUNK = "Trunk"
    ISOLATION = "Isolation"


class DeploymentMethod(Enum):
    """How the guest OS gets installed."""

    ISO = "ISO"
    WDS = "WDS"
    SCCM = "SCCM"
    VHD = "VHD"


class PowerState(Enum):
    """Hyper-V VM states the engine cares about."""

    OFF = "Off"
    RUNNING = "Running"
    SAVED = "Saved"
    PAUSED = "Paused"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Any) -> "PowerState":
        for state in cls:
            if state.value.lower() == str(value).lower():
                return state
        return cls.OTHER


@dataclass(frozen=True)
class MemoryPolicy:
    """Startup memory plus optional dynamic-memory bounds."""

    startup_bytes: int
    minimum_bytes: Optional[int] = None
    maximum_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        if self.startup_bytes <= 0:
            raise ValueError("memory startup bytes must be positive")

    @property
    def dynamic(self) -> bool:
        """Dynamic memory is enabled only when both bounds are given."""
        return self.minimum_bytes is not None and self.maximum_bytes is not None

    def effective_bounds(self) -> Tuple[int, int]:
        """
        Bounds actually applied: startup always lies inside the range.

        The provided minimum/maximum are widened to include startup rather
        than rejected.
        """
        if not self.dynamic:
            return self.startup_bytes, self.startup_bytes
        return (
            min(self.startup_bytes, self.minimum_bytes),  # type: ignore[type-var]
            max(self.startup_bytes, self.maximum_bytes),  # type: ignore[type-var]
        )


@dataclass(frozen=True)
class DesiredDisk:
    """A virtual disk the VM must have attached."""

    path: str
    size_bytes: int
    controller_number: Optional[int] = None
    controller_location: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("disk path is required")
        if self.size_bytes <= 0:
            raise ValueError(f"disk {self.path}: size must be positive")
        if self.controller_number is not None and not 0 <= self.controller_number < SCSI_CONTROLLER_LIMIT:
            raise ValueError(f"disk {self.path}: controller number must be 0-{SCSI_CONTROLLER_LIMIT - 1}")
        if self.controller_location is not None and not 0 <= self.controller_location < SCSI_LOCATION_LIMIT:
            raise ValueError(f"disk {self.path}: controller location must be 0-{SCSI_LOCATION_LIMIT - 1}")

    @property
    def key(self) -> str:
        """Windows paths compare case-insensitively."""
        return self.path.casefold()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredDisk":
        size = data.get("sizeBytes", data.get("size"))
        if size is None:
            raise ValueError(f"disk {data.get('path')}: size is required")
        return cls(
            path=data.get("path", ""),
            size_bytes=parse_size(size),
            controller_number=data.get("controllerNumber"),
            controller_location=data.get("controllerLocation"),
        )


@dataclass(frozen=True)
class DhcpReservation:
    """Address reservation to keep on a DHCP server for an adapter."""

    server: str
    scope: str
    ip_address: str
    router: Optional[str] = None


def normalize_vlan(
    adapter: str, mode: VlanMode, vlan_id: Optional[int], vlan_id_list: Optional[str]
) -> VlanMode:
    """Degrade VLAN settings that cannot be applied to Untagged, with a warning."""
    if mode in (VlanMode.ACCESS, VlanMode.ISOLATION) and not vlan_id:
        logger.warning(f"Adapter {adapter}: {mode.value} mode with VLAN id 0 configured as Untagged")
        return VlanMode.UNTAGGED
    if mode == VlanMode.TRUNK and not vlan_id and not vlan_id_list:
        logger.warning(f"Adapter {adapter}: Trunk mode without VLAN id or list configured as Untagged")
        return VlanMode.UNTAGGED
    return mode


@dataclass(frozen=True)
class DesiredNetworkAdapter:
    """A network adapter identified by name."""

    name: str
    switch: Optional[str] = None
    vlan_mode: VlanMode = VlanMode.UNTAGGED
    vlan_id: Optional[int] = None
    vlan_id_list: Optional[str] = None
    mac_address: Optional[str] = None
    ip_address: Optional[str] = None
    mac_prefix: Optional[str] = None
    mac_spoofing: bool = False
    teaming: bool = False
    dhcp: Optional[DhcpReservation] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("adapter name is required")
        if self.vlan_id is not None and not 0 <= self.vlan_id <= 4094:
            raise ValueError(f"adapter {self.name}: VLAN id must be 0-4094")
        if self.vlan_id_list is not None and not _VLAN_LIST_RE.match(self.vlan_id_list.replace(" ", "")):
            raise ValueError(f"adapter {self.name}: invalid VLAN id list {self.vlan_id_list!r}")
        if self.mac_address is not None:
            object.__setattr__(self, "mac_address", normalize_mac(self.mac_address))
        if self.mac_prefix is not None and not re.match(r"^[0-9A-Fa-f]{4}$", self.mac_prefix):
            raise ValueError(f"adapter {self.name}: MAC prefix must be 4 hex digits")
        if self.ip_address is not None:
            ipaddress.IPv4Address(self.ip_address)
        if self.dhcp is not None and self.ip_address is None:
            raise ValueError(f"adapter {self.name}: a DHCP reservation needs ipAddress")
        object.__setattr__(
            self, "vlan_mode", normalize_vlan(self.name, self.vlan_mode, self.vlan_id, self.vlan_id_list)
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredNetworkAdapter":
        ip = data.get("ipAddress")
        dhcp = None
        if data.get("dhcpScope"):
            if not data.get("dhcpServer"):
                raise ValueError(f"adapter {data.get('name')}: dhcpScope needs dhcpServer")
            dhcp = DhcpReservation(
                server=data["dhcpServer"],
                scope=data["dhcpScope"],
                ip_address=ip,
                router=data.get("dhcpRouter"),
            )
        mode_value = data.get("vlanMode", VlanMode.UNTAGGED.value)
        try:
            mode = VlanMode(str(mode_value).capitalize())
        except ValueError:
            raise ValueError(f"adapter {data.get('name')}: unknown VLAN mode {mode_value!r}")
        vlan_list = data.get("vlanIdList")
        if isinstance(vlan_list, list):
            vlan_list = ",".join(str(v) for v in vlan_list)
        return cls(
            name=data.get("name", ""),
            switch=data.get("switch") or None,
            vlan_mode=mode,
            vlan_id=data.get("vlanId"),
            vlan_id_list=vlan_list or None,
            mac_address=data.get("macAddress") or None,
            ip_address=ip,
            mac_prefix=data.get("macPrefix") or None,
            mac_spoofing=bool(data.get("macSpoofing", False)),
            teaming=bool(data.get("teaming", False)),
            dhcp=dhcp,
        )


@dataclass(frozen=True)
class IsoDeployment:
    """Boot from an installation image in the DVD drive."""

    method: ClassVar[DeploymentMethod] = DeploymentMethod.ISO
    file_path: str


@dataclass(frozen=True)
class WdsDeployment:
    """Network boot against a standalone WDS server."""

    method: ClassVar[DeploymentMethod] = DeploymentMethod.WDS
    server: str
    unattend_path: str


@dataclass(frozen=True)
class SccmDeployment:
    """Network boot through an SCCM task sequence targeted at collections."""

    method: ClassVar[DeploymentMethod] = DeploymentMethod.SCCM
    server: str
    collections: Tuple[str, ...]
    site_code: Optional[str] = None
    domain_name: Optional[str] = None
    ou_path: Optional[str] = None


@dataclass(frozen=True)
class VhdDeployment:
    """Copy a prepared image over the boot disk and inject an answer file."""

    method: ClassVar[DeploymentMethod] = DeploymentMethod.VHD
    source_path: str
    controller_number: int = 0
    controller_location: int = 0
    unattend_path: Optional[str] = None
    domain_name: Optional[str] = None
    ou_path: Optional[str] = None


OSDeployment = Union[IsoDeployment, WdsDeployment, SccmDeployment, VhdDeployment]


def _require(data: Dict[str, Any], key: str, method: str) -> Any:
    value = data.get(key)
    if value in (None, "", []):
        raise ValueError(f"deploymentMethod {method} requires '{key}'")
    return value


def parse_deployment(data: Dict[str, Any]) -> Optional[OSDeployment]:
    """Build the one deployment variant named by deploymentMethod."""
    raw = data.get("deploymentMethod")
    if not raw:
        return None
    try:
        method = DeploymentMethod(str(raw).upper())
    except ValueError:
        raise ValueError(f"unknown deploymentMethod {raw!r}")

    if method == DeploymentMethod.ISO:
        return IsoDeployment(file_path=_require(data, "filePath", method.value))
    if method == DeploymentMethod.WDS:
        return WdsDeployment(
            server=_require(data, "wdsServer", method.value),
            unattend_path=_require(data, "unattendPath", method.value),
        )
    if method == DeploymentMethod.SCCM:
        collections = _require(data, "collections", method.value)
        if isinstance(collections, str):
            collections = [collections]
        return SccmDeployment(
            server=_require(data, "sccmServer", method.value),
            collections=tuple(collections),
            site_code=data.get("siteCode"),
            domain_name=data.get("domainName"),
            ou_path=data.get("ouPath"),
        )
    return VhdDeployment(
        source_path=_require(data, "sourcePath", method.value),
        controller_number=data.get("bootControllerNumber", 0),
        controller_location=data.get("bootControllerLocation", 0),
        unattend_path=data.get("unattendPath"),
        domain_name=data.get("domainName"),
        ou_path=data.get("ouPath"),
    )


@dataclass(frozen=True)
class DesiredVM:
    """Desired state of one VM, read-only during a reconciliation pass."""

    name: str
    path: str
    memory: MemoryPolicy
    host: Optional[str] = None
    processor_count: int = 1
    generation: int = 2
    enable_tpm: bool = False
    disable_smt: bool = False
    disks: Tuple[DesiredDisk, ...] = ()
    adapters: Tuple[DesiredNetworkAdapter, ...] = ()
    deployment: Optional[OSDeployment] = None
    cluster_priority: Optional[int] = None
    affinity_rules: Tuple[str, ...] = ()
    do_not_cluster: bool = False

    def __post_init__(self) -> None:
        if self.generation not in (1, 2):
            raise ValueError("generation must be 1 or 2")
        if self.processor_count < 1:
            raise ValueError("processorCount must be at least 1")
        names = [a.name.casefold() for a in self.adapters]
        if len(names) != len(set(names)):
            raise ValueError("adapter names must be unique per VM")

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any], default_path: str) -> "DesiredVM":
        """Parse one store entry."""
        if data.get("name") not in (None, name):
            raise ValueError(f"entry name {data['name']!r} does not match key {name!r}")
        startup = data.get("memoryStartupBytes", data.get("memory", 1024**3))
        minimum = data.get("memoryMinimumBytes")
        maximum = data.get("memoryMaximumBytes")
        memory = MemoryPolicy(
            startup_bytes=parse_size(startup),
            minimum_bytes=parse_size(minimum) if minimum is not None else None,
            maximum_bytes=parse_size(maximum) if maximum is not None else None,
        )
        rules = data.get("affinityRules") or []
        if isinstance(rules, str):
            rules = [rules]
        return cls(
            name=name,
            host=data.get("hostName") or data.get("host") or None,
            path=data.get("path") or default_path,
            memory=memory,
            processor_count=int(data.get("processorCount", 1)),
            generation=int(data.get("generation", 2)),
            enable_tpm=bool(data.get("enableTpm", False)),
            disable_smt=bool(data.get("disableSmt", False)),
            disks=tuple(DesiredDisk.from_dict(d) for d in data.get("disks", [])),
            adapters=tuple(DesiredNetworkAdapter.from_dict(a) for a in data.get("adapters", [])),
            deployment=parse_deployment(data),
            cluster_priority=data.get("clusterPriority"),
            affinity_rules=tuple(rules),
            do_not_cluster=bool(data.get("doNotCluster", False)),
        )


@dataclass
class DesiredStateStore:
    """JSON document whose top-level keys are VM names."""

    entries: Dict[str, Dict[str, Any]]
    source: Optional[Path] = None
    default_path: str = r"C:\ProgramData\Microsoft\Windows\Hyper-V"

    @classmethod
    def load(cls, path: Path, default_path: Optional[str] = None) -> "DesiredStateStore":
        """Read the store; never written back."""
        try:
            with open(path, encoding="utf-8-sig") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StoreError(f"Declarative store not found: {path}")
        except json.JSONDecodeError as e:
            raise StoreError(f"Declarative store {path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise StoreError(f"Declarative store {path} must be a JSON object keyed by VM name")
        store = cls(entries=data, source=Path(path))
        if default_path:
            store.default_path = default_path
        return store

    def names(self) -> List[str]:
        return list(self.entries)

    def get(self, name: str) -> DesiredVM:
        """Parse the entry for name; lookup is case-insensitive like Hyper-V names."""
        key = next((k for k in self.entries if k.casefold() == name.casefold()), None)
        if key is None:
            raise VMNotFoundError(f"VM '{name}' is not defined in the declarative store")
        entry = self.entries[key]
        if not isinstance(entry, dict):
            raise StoreError(f"Entry for '{key}' must be a JSON object")
        try:
            return DesiredVM.from_dict(key, entry, self.default_path)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Invalid entry for '{key}': {e}")


@dataclass
class LiveVM:
    """A located VM. Re-queried every pass, never cached."""

    name: str
    id: str
    host: str
    state: PowerState = PowerState.OFF
    path: str = ""
    generation: int = 2
    cluster_group: Optional[str] = None
    created: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any], host: str) -> "LiveVM":
        return cls(
            name=record["name"],
            id=str(record["id"]),
            host=record.get("host") or host,
            state=PowerState.parse(record.get("state", "Off")),
            path=record.get("path", ""),
            generation=int(record.get("generation", 2)),
        )

    @property
    def running(self) -> bool:
        return self.state == PowerState.RUNNING


@dataclass
class ClusterTopology:
    """Cluster membership of a host, derived per invocation."""

    host: str
    cluster_name: str = ""
    nodes: List[str] = field(default_factory=list)

    @property
    def clustered(self) -> bool:
        return bool(self.cluster_name)

    @property
    def candidates(self) -> List[str]:
        """Hosts to search for a VM: every node when clustered, else the host."""
        return list(self.nodes) if self.clustered and self.nodes else [self.host]
