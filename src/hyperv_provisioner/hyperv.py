"""
Hyper-V and failover-cluster host API.

Each method is one PowerShell operation run through the broker against
the host passed as its first argument, so callers can re-home to another
node at any point by passing a different host.
"""

import logging
from typing import Any, Dict, List, Optional

from hyperv_provisioner.broker import ExecutionContext
from hyperv_provisioner.powershell import Operation, as_list

logger = logging.getLogger(__name__)

_VM_RECORD = """
function ConvertTo-VmRecord($vm) {
    [ordered]@{
        id = $vm.Id.ToString()
        name = $vm.Name
        host = $vm.ComputerName
        state = $vm.State.ToString()
        path = $vm.Path
        generation = $vm.Generation
    }
}
"""

GET_CLUSTER = Operation("Get-ClusterTopology", """
$svc = Get-Service -Name ClusSvc -ErrorAction SilentlyContinue
if ($null -eq $svc -or $svc.Status -ne 'Running') {
    return [ordered]@{ name = ''; nodes = @() }
}
$cluster = Get-Cluster
[ordered]@{ name = $cluster.Name; nodes = @(Get-ClusterNode -Cluster $cluster.Name | ForEach-Object { $_.Name }) }
""")

FIND_VMS = Operation("Find-VM", _VM_RECORD + """
Get-VM -Name $p.name -ErrorAction SilentlyContinue | ForEach-Object { ConvertTo-VmRecord $_ }
""")

GET_VM = Operation("Get-VM", _VM_RECORD + """
$vm = Get-VM -Id $p.id -ErrorAction SilentlyContinue
if ($vm) { ConvertTo-VmRecord $vm }
""")

NEW_VM = Operation("New-VM", _VM_RECORD + """
$vm = New-VM -Name $p.name -Path $p.path -Generation $p.generation -MemoryStartupBytes ([int64]$p.startup) -NoVHD
Get-VMNetworkAdapter -VM $vm | Remove-VMNetworkAdapter
ConvertTo-VmRecord $vm
""")

START_VM = Operation("Start-VM", "Start-VM -VM (Get-VM -Id $p.id)")

STOP_VM = Operation("Stop-VM", """
$vm = Get-VM -Id $p.id
if ($p.turn_off) { Stop-VM -VM $vm -TurnOff -Force } else { Stop-VM -VM $vm -Force }
""")

RESTART_VM = Operation("Restart-VM", "Restart-VM -VM (Get-VM -Id $p.id) -Force")

REMOVE_VM = Operation("Remove-VM", "Remove-VM -VM (Get-VM -Id $p.id) -Force")

GET_PROCESSOR = Operation("Get-VMProcessor", """
$proc = Get-VMProcessor -VM (Get-VM -Id $p.id)
[ordered]@{ count = $proc.Count; hw_threads_per_core = [int]$proc.HwThreadCountPerCore }
""")

SET_PROCESSOR = Operation("Set-VMProcessor", """
Set-VMProcessor -VM (Get-VM -Id $p.id) -Count $p.count -HwThreadCountPerCore $p.hw_threads_per_core
""")

GET_MEMORY = Operation("Get-VMMemory", """
$mem = Get-VMMemory -VM (Get-VM -Id $p.id)
[ordered]@{ dynamic = $mem.DynamicMemoryEnabled; startup = $mem.Startup; minimum = $mem.Minimum; maximum = $mem.Maximum }
""")

SET_MEMORY = Operation("Set-VMMemory", """
$vm = Get-VM -Id $p.id
if ($p.dynamic) {
    Set-VMMemory -VM $vm -DynamicMemoryEnabled $true -StartupBytes ([int64]$p.startup) -MinimumBytes ([int64]$p.minimum) -MaximumBytes ([int64]$p.maximum)
} else {
    Set-VMMemory -VM $vm -DynamicMemoryEnabled $false -StartupBytes ([int64]$p.startup)
}
""")

_SETTINGS_DATA = """
$vssd = Get-CimInstance -Namespace root\\virtualization\\v2 -ClassName Msvm_VirtualSystemSettingData |
    Where-Object { $_.VirtualSystemIdentifier -eq $p.id -and $_.VirtualSystemType -eq 'Microsoft:Hyper-V:System:Realized' }
if ($null -eq $vssd) { throw "No system settings found for VM $($p.id)" }
"""

GET_SYSTEM_SETTINGS = Operation("Get-VMSystemSettings", _SETTINGS_DATA + """
$out = [ordered]@{}
foreach ($name in $p.fields) { $out[$name] = $vssd.$name }
$out
""")

SET_SYSTEM_SETTINGS = Operation("Set-VMSystemSettings", _SETTINGS_DATA + """
foreach ($prop in $p.changes.PSObject.Properties) { $vssd.$($prop.Name) = $prop.Value }
$vsms = Get-CimInstance -Namespace root\\virtualization\\v2 -ClassName Msvm_VirtualSystemManagementService
$serializer = [Microsoft.Management.Infrastructure.Serialization.CimSerializer]::Create()
$xml = [System.Text.Encoding]::Unicode.GetString($serializer.Serialize($vssd, 'None'))
$result = Invoke-CimMethod -InputObject $vsms -MethodName ModifySystemSettings -Arguments @{ SystemSettings = $xml }
if ($result.ReturnValue -notin 0, 4096) { throw "ModifySystemSettings returned $($result.ReturnValue)" }
""")

GET_BIOS_GUID = Operation("Get-VMBiosGuid", _SETTINGS_DATA + """
$vssd.BIOSGUID.Trim('{}')
""")

GET_SECURITY = Operation("Get-VMSecurity", """
$vm = Get-VM -Id $p.id
$kp = Get-VMKeyProtector -VM $vm
$hasProtector = $false
if ($kp -and $kp.Length -gt 4) { $hasProtector = $true }
[ordered]@{ tpm_enabled = (Get-VMSecurity -VM $vm).TpmEnabled; key_protector = $hasProtector }
""")

SET_KEY_PROTECTOR = Operation("Set-VMKeyProtector", "Set-VMKeyProtector -VM (Get-VM -Id $p.id) -NewLocalKeyProtector")

ENABLE_TPM = Operation("Enable-VMTPM", "Enable-VMTPM -VM (Get-VM -Id $p.id)")

GET_HARD_DISKS = Operation("Get-VMHardDiskDrive", """
Get-VMHardDiskDrive -VM (Get-VM -Id $p.id) | ForEach-Object {
    [ordered]@{
        path = $_.Path
        controller_type = $_.ControllerType.ToString()
        controller_number = $_.ControllerNumber
        controller_location = $_.ControllerLocation
    }
}
""")

ADD_HARD_DISK = Operation("Add-VMHardDiskDrive", """
Add-VMHardDiskDrive -VM (Get-VM -Id $p.id) -ControllerType SCSI -ControllerNumber $p.controller_number -ControllerLocation $p.controller_location -Path $p.path
""")

REMOVE_HARD_DISK = Operation("Remove-VMHardDiskDrive", """
Get-VMHardDiskDrive -VM (Get-VM -Id $p.id) -ControllerType $p.controller_type -ControllerNumber $p.controller_number -ControllerLocation $p.controller_location |
    Remove-VMHardDiskDrive
""")

GET_SCSI_COUNT = Operation("Get-VMScsiController", "@(Get-VMScsiController -VM (Get-VM -Id $p.id)).Count")

ADD_SCSI = Operation("Add-VMScsiController", "Add-VMScsiController -VM (Get-VM -Id $p.id)")

GET_VHD = Operation("Get-VHD", """
if (Test-Path -LiteralPath $p.path) {
    $vhd = Get-VHD -Path $p.path
    [ordered]@{ path = $vhd.Path; size = $vhd.Size; file_size = $vhd.FileSize; attached = $vhd.Attached }
}
""")

NEW_VHD = Operation("New-VHD", """
$parent = Split-Path -Parent $p.path
if ($parent -and -not (Test-Path -LiteralPath $parent)) { New-Item -ItemType Directory -Path $parent | Out-Null }
New-VHD -Path $p.path -SizeBytes ([int64]$p.size) -Dynamic | Out-Null
""")

RESIZE_VHD = Operation("Resize-VHD", "Resize-VHD -Path $p.path -SizeBytes ([int64]$p.size)")

MOUNT_VHD = Operation("Mount-VHD", """
$disk = Mount-VHD -Path $p.path -Passthru | Get-Disk
$volume = $disk | Get-Partition | Where-Object { $_.DriveLetter } | Sort-Object Size -Descending | Select-Object -First 1
if ($null -eq $volume) { throw "No lettered volume on $($p.path)" }
"$($volume.DriveLetter):\\"
""")

DISMOUNT_VHD = Operation("Dismount-VHD", "Dismount-VHD -Path $p.path")

GET_DVD_DRIVES = Operation("Get-VMDvdDrive", """
Get-VMDvdDrive -VM (Get-VM -Id $p.id) | ForEach-Object {
    [ordered]@{ controller_number = $_.ControllerNumber; controller_location = $_.ControllerLocation; path = $_.Path }
}
""")

ADD_DVD_DRIVE = Operation("Add-VMDvdDrive", """
$drive = Add-VMDvdDrive -VM (Get-VM -Id $p.id) -ControllerNumber $p.controller_number -Path $p.path -Passthru
[ordered]@{ controller_number = $drive.ControllerNumber; controller_location = $drive.ControllerLocation; path = $drive.Path }
""")

SET_DVD_PATH = Operation("Set-VMDvdDrive", """
Set-VMDvdDrive -VMName (Get-VM -Id $p.id).Name -ControllerNumber $p.controller_number -ControllerLocation $p.controller_location -Path $p.path
""")

GET_FIRST_BOOT = Operation("Get-VMFirstBootDevice", """
$first = (Get-VMFirmware -VM (Get-VM -Id $p.id)).BootOrder | Select-Object -First 1
if ($first -and $first.Device) {
    [ordered]@{
        type = $first.Device.GetType().Name -replace '^VM', ''
        controller_number = $first.Device.ControllerNumber
        controller_location = $first.Device.ControllerLocation
    }
}
""")

SET_FIRST_BOOT_DVD = Operation("Set-VMFirstBootDevice", """
$vm = Get-VM -Id $p.id
$dvd = Get-VMDvdDrive -VM $vm -ControllerNumber $p.controller_number -ControllerLocation $p.controller_location
Set-VMFirmware -VM $vm -FirstBootDevice $dvd
""")

GET_ADAPTERS = Operation("Get-VMNetworkAdapter", """
Get-VMNetworkAdapter -VM (Get-VM -Id $p.id) | ForEach-Object {
    $vlan = Get-VMNetworkAdapterVlan -VMNetworkAdapter $_
    $iso = Get-VMNetworkAdapterIsolation -VMNetworkAdapter $_
    [ordered]@{
        id = $_.Id
        name = $_.Name
        switch = $_.SwitchName
        mac = $_.MacAddress
        dynamic_mac = $_.DynamicMacAddressEnabled
        device_naming = ($_.DeviceNaming -eq 'On')
        mac_spoofing = ($_.MacAddressSpoofing -eq 'On')
        teaming = ($_.AllowTeaming -eq 'On')
        vlan = [ordered]@{
            mode = $vlan.OperationMode.ToString()
            access_id = $vlan.AccessVlanId
            native_id = $vlan.NativeVlanId
            allowed_ids = $vlan.AllowedVlanIdListString
        }
        isolation = [ordered]@{ mode = $iso.IsolationMode.ToString(); default_id = $iso.DefaultIsolationID }
    }
}
""")

_ADAPTER = """
$adapter = Get-VMNetworkAdapter -VM (Get-VM -Id $p.id) | Where-Object { $_.Id -eq $p.adapter_id }
if ($null -eq $adapter) { throw "Network adapter $($p.adapter_id) not found" }
"""

ADD_ADAPTER = Operation("Add-VMNetworkAdapter", """
$adapter = Add-VMNetworkAdapter -VM (Get-VM -Id $p.id) -Name $p.name -Passthru
[ordered]@{ id = $adapter.Id; name = $adapter.Name; mac = $adapter.MacAddress }
""")

REMOVE_ADAPTER = Operation("Remove-VMNetworkAdapter", _ADAPTER + "Remove-VMNetworkAdapter -VMNetworkAdapter $adapter")

CONNECT_ADAPTER = Operation(
    "Connect-VMNetworkAdapter", _ADAPTER + "Connect-VMNetworkAdapter -VMNetworkAdapter $adapter -SwitchName $p.switch"
)

DISCONNECT_ADAPTER = Operation(
    "Disconnect-VMNetworkAdapter", _ADAPTER + "Disconnect-VMNetworkAdapter -VMNetworkAdapter $adapter"
)

SET_ADAPTER_VLAN = Operation("Set-VMNetworkAdapterVlan", _ADAPTER + """
switch ($p.mode) {
    'Access' { Set-VMNetworkAdapterVlan -VMNetworkAdapter $adapter -Access -VlanId $p.access_id }
    'Trunk' { Set-VMNetworkAdapterVlan -VMNetworkAdapter $adapter -Trunk -NativeVlanId $p.native_id -AllowedVlanIdList $p.allowed_ids }
    default { Set-VMNetworkAdapterVlan -VMNetworkAdapter $adapter -Untagged }
}
""")

SET_ADAPTER_ISOLATION = Operation("Set-VMNetworkAdapterIsolation", _ADAPTER + """
if ($p.mode -eq 'Vlan') {
    Set-VMNetworkAdapterIsolation -VMNetworkAdapter $adapter -IsolationMode Vlan -DefaultIsolationID $p.default_id -AllowUntaggedTraffic $true
} else {
    Set-VMNetworkAdapterIsolation -VMNetworkAdapter $adapter -IsolationMode None
}
""")

SET_ADAPTER_MAC = Operation(
    "Set-VMNetworkAdapter -StaticMacAddress",
    _ADAPTER + "Set-VMNetworkAdapter -VMNetworkAdapter $adapter -StaticMacAddress $p.mac",
)

SET_ADAPTER_OPTIONS = Operation("Set-VMNetworkAdapter", _ADAPTER + """
$onOff = @{ $true = 'On'; $false = 'Off' }
$params = @{}
if ($null -ne $p.device_naming) { $params.DeviceNaming = $onOff[[bool]$p.device_naming] }
if ($null -ne $p.mac_spoofing) { $params.MacAddressSpoofing = $onOff[[bool]$p.mac_spoofing] }
if ($null -ne $p.teaming) { $params.AllowTeaming = $onOff[[bool]$p.teaming] }
Set-VMNetworkAdapter -VMNetworkAdapter $adapter @params
""")

GET_MAC_POOL = Operation("Get-VMHost", """
$h = Get-VMHost
[ordered]@{ minimum = $h.MacAddressMinimum; maximum = $h.MacAddressMaximum }
""")

SET_MAC_POOL_MINIMUM = Operation("Set-VMHost", "Set-VMHost -MacAddressMinimum $p.minimum")

GET_SNAPSHOTS = Operation("Get-VMSnapshot", "Get-VMSnapshot -VM (Get-VM -Id $p.id) | ForEach-Object { $_.Name }")

REMOVE_SNAPSHOTS = Operation(
    "Remove-VMSnapshot", "Get-VMSnapshot -VM (Get-VM -Id $p.id) | Remove-VMSnapshot -IncludeAllChildSnapshots"
)

IS_MERGING = Operation("Get-VMMergeState", """
$vm = Get-VM -Id $p.id
[bool](@($vm.OperationalStatus) -contains 'MergingDisks' -or $vm.Status -match 'Merging')
""")

GET_CLUSTER_GROUP = Operation("Get-ClusterGroup", """
$resource = Get-ClusterResource -Cluster $p.cluster | Where-Object { $_.ResourceType -like 'Virtual Machine' } |
    Where-Object { ($_ | Get-ClusterParameter -Name VmID).Value -eq $p.id } | Select-Object -First 1
if ($resource) {
    $group = $resource.OwnerGroup
    [ordered]@{ name = $group.Name; state = $group.State.ToString(); owner_node = $group.OwnerNode.Name; priority = [int]$group.Priority }
}
""")

ADD_CLUSTER_ROLE = Operation("Add-ClusterVirtualMachineRole", """
$group = Add-ClusterVirtualMachineRole -Cluster $p.cluster -VMId $p.id
[ordered]@{ name = $group.Name; state = $group.State.ToString(); owner_node = $group.OwnerNode.Name; priority = [int]$group.Priority }
""")

SET_GROUP_PRIORITY = Operation(
    "Set-ClusterGroupPriority", "(Get-ClusterGroup -Cluster $p.cluster -Name $p.group).Priority = $p.priority"
)

GET_AFFINITY_RULES = Operation("Get-ClusterAffinityRule", """
Get-ClusterAffinityRule -Cluster $p.cluster | ForEach-Object {
    [ordered]@{ name = $_.Name; groups = @($_.Groups) }
}
""")

ADD_TO_AFFINITY_RULE = Operation(
    "Add-ClusterGroupToAffinityRule",
    "Add-ClusterGroupToAffinityRule -Cluster $p.cluster -Name $p.rule -Groups $p.group",
)

GET_PREFERRED_OWNERS = Operation(
    "Get-ClusterOwnerNode",
    "(Get-ClusterOwnerNode -Cluster $p.cluster -Group $p.group).OwnerNodes | ForEach-Object { $_.Name }",
)

SET_PREFERRED_OWNERS = Operation(
    "Set-ClusterOwnerNode", "Set-ClusterOwnerNode -Cluster $p.cluster -Group $p.group -Owners $p.nodes"
)

START_CLUSTER_GROUP = Operation("Start-ClusterGroup", "Start-ClusterGroup -Cluster $p.cluster -Name $p.group | Out-Null")

STOP_CLUSTER_GROUP = Operation("Stop-ClusterGroup", "Stop-ClusterGroup -Cluster $p.cluster -Name $p.group | Out-Null")

MOVE_CLUSTER_GROUP = Operation(
    "Move-ClusterGroup", "(Move-ClusterGroup -Cluster $p.cluster -Name $p.group).OwnerNode.Name"
)

REMOVE_CLUSTER_GROUP = Operation(
    "Remove-ClusterGroup", "Remove-ClusterGroup -Cluster $p.cluster -Name $p.group -RemoveResources -Force"
)

MOVE_CSV_OWNER = Operation("Move-ClusterSharedVolume", """
$csv = Get-ClusterSharedVolume -Cluster $p.cluster | Where-Object {
    $p.path.StartsWith($_.SharedVolumeInfo.FriendlyVolumeName + '\\', [System.StringComparison]::OrdinalIgnoreCase)
} | Select-Object -First 1
if ($null -eq $csv) { return $false }
if ($csv.OwnerNode.Name -ne $p.node) { Move-ClusterSharedVolume -InputObject $csv -Node $p.node | Out-Null }
$true
""")

COPY_FILE = Operation("Copy-Item", "Copy-Item -LiteralPath $p.source -Destination $p.destination -Force")

READ_TEXT = Operation("Get-Content", "Get-Content -LiteralPath $p.path -Raw")

WRITE_TEXT = Operation("Set-Content", """
$parent = Split-Path -Parent $p.path
if (-not (Test-Path -LiteralPath $parent)) { New-Item -ItemType Directory -Path $parent | Out-Null }
Set-Content -LiteralPath $p.path -Value $p.content -Encoding UTF8
""")

REMOVE_ITEM = Operation("Remove-Item", """
if (Test-Path -LiteralPath $p.path) { Remove-Item -LiteralPath $p.path -Force; $true } else { $false }
""")

REMOVE_EMPTY_DIRECTORY = Operation("Remove-EmptyDirectory", """
if ((Test-Path -LiteralPath $p.path -PathType Container) -and -not (Get-ChildItem -LiteralPath $p.path -Force)) {
    Remove-Item -LiteralPath $p.path -Force
    $true
} else { $false }
""")


class HyperVClient:
    """Typed access to Hyper-V, failover-cluster and filesystem operations on a host."""

    def __init__(self, context: ExecutionContext):
        self.context = context

    def _run(self, host: str, operation: Operation, **args: Any) -> Any:
        return self.context.invoke(host, operation, args)

    # Topology

    def get_cluster(self, host: str) -> Dict[str, Any]:
        """Return {'name': cluster or '', 'nodes': [...]} for host."""
        result = self._run(host, GET_CLUSTER) or {}
        return {"name": result.get("name") or "", "nodes": as_list(result.get("nodes"))}

    def find_vms(self, host: str, name: str) -> List[Dict[str, Any]]:
        return as_list(self._run(host, FIND_VMS, name=name))

    def get_vm(self, host: str, vm_id: str) -> Optional[Dict[str, Any]]:
        return self._run(host, GET_VM, id=vm_id)

    # Compute

    def new_vm(self, host: str, name: str, path: str, generation: int, startup_bytes: int) -> Dict[str, Any]:
        return self._run(host, NEW_VM, name=name, path=path, generation=generation, startup=startup_bytes)

    def start_vm(self, host: str, vm_id: str) -> None:
        self._run(host, START_VM, id=vm_id)

    def stop_vm(self, host: str, vm_id: str, turn_off: bool = True) -> None:
        self._run(host, STOP_VM, id=vm_id, turn_off=turn_off)

    def restart_vm(self, host: str, vm_id: str) -> None:
        self._run(host, RESTART_VM, id=vm_id)

    def remove_vm(self, host: str, vm_id: str) -> None:
        self._run(host, REMOVE_VM, id=vm_id)

    def get_processor(self, host: str, vm_id: str) -> Dict[str, int]:
        return self._run(host, GET_PROCESSOR, id=vm_id)

    def set_processor(self, host: str, vm_id: str, count: int, hw_threads_per_core: int) -> None:
        self._run(host, SET_PROCESSOR, id=vm_id, count=count, hw_threads_per_core=hw_threads_per_core)

    def get_memory(self, host: str, vm_id: str) -> Dict[str, Any]:
        return self._run(host, GET_MEMORY, id=vm_id)

    def set_memory(
        self,
        host: str,
        vm_id: str,
        dynamic: bool,
        startup: int,
        minimum: Optional[int] = None,
        maximum: Optional[int] = None,
    ) -> None:
        self._run(host, SET_MEMORY, id=vm_id, dynamic=dynamic, startup=startup, minimum=minimum, maximum=maximum)

    def get_system_settings(self, host: str, vm_id: str, fields: List[str]) -> Dict[str, Any]:
        return self._run(host, GET_SYSTEM_SETTINGS, id=vm_id, fields=fields) or {}

    def set_system_settings(self, host: str, vm_id: str, changes: Dict[str, Any]) -> None:
        self._run(host, SET_SYSTEM_SETTINGS, id=vm_id, changes=changes)

    def get_bios_guid(self, host: str, vm_id: str) -> str:
        return str(self._run(host, GET_BIOS_GUID, id=vm_id)).upper()

    def get_security(self, host: str, vm_id: str) -> Dict[str, bool]:
        return self._run(host, GET_SECURITY, id=vm_id)

    def set_key_protector(self, host: str, vm_id: str) -> None:
        self._run(host, SET_KEY_PROTECTOR, id=vm_id)

    def enable_tpm(self, host: str, vm_id: str) -> None:
        self._run(host, ENABLE_TPM, id=vm_id)

    # Storage

    def get_hard_disks(self, host: str, vm_id: str) -> List[Dict[str, Any]]:
        return as_list(self._run(host, GET_HARD_DISKS, id=vm_id))

    def add_hard_disk(self, host: str, vm_id: str, path: str, controller_number: int, controller_location: int) -> None:
        self._run(
            host,
            ADD_HARD_DISK,
            id=vm_id,
            path=path,
            controller_number=controller_number,
            controller_location=controller_location,
        )

    def remove_hard_disk(
        self, host: str, vm_id: str, controller_type: str, controller_number: int, controller_location: int
    ) -> None:
        self._run(
            host,
            REMOVE_HARD_DISK,
            id=vm_id,
            controller_type=controller_type,
            controller_number=controller_number,
            controller_location=controller_location,
        )

    def get_scsi_controller_count(self, host: str, vm_id: str) -> int:
        return int(self._run(host, GET_SCSI_COUNT, id=vm_id) or 0)

    def add_scsi_controller(self, host: str, vm_id: str) -> None:
        self._run(host, ADD_SCSI, id=vm_id)

    def get_vhd(self, host: str, path: str) -> Optional[Dict[str, Any]]:
        return self._run(host, GET_VHD, path=path)

    def new_vhd(self, host: str, path: str, size_bytes: int) -> None:
        self._run(host, NEW_VHD, path=path, size=size_bytes)

    def resize_vhd(self, host: str, path: str, size_bytes: int) -> None:
        self._run(host, RESIZE_VHD, path=path, size=size_bytes)

    def mount_vhd(self, host: str, path: str) -> str:
        """Mount an image and return the root of its largest lettered volume."""
        return self._run(host, MOUNT_VHD, path=path)

    def dismount_vhd(self, host: str, path: str) -> None:
        self._run(host, DISMOUNT_VHD, path=path)

    # DVD and boot order

    def get_dvd_drives(self, host: str, vm_id: str) -> List[Dict[str, Any]]:
        return as_list(self._run(host, GET_DVD_DRIVES, id=vm_id))

    def add_dvd_drive(self, host: str, vm_id: str, controller_number: int, path: str) -> Dict[str, Any]:
        return self._run(host, ADD_DVD_DRIVE, id=vm_id, controller_number=controller_number, path=path)

    def set_dvd_path(self, host: str, vm_id: str, controller_number: int, controller_location: int, path: str) -> None:
        self._run(
            host,
            SET_DVD_PATH,
            id=vm_id,
            controller_number=controller_number,
            controller_location=controller_location,
            path=path,
        )

    def get_first_boot_device(self, host: str, vm_id: str) -> Optional[Dict[str, Any]]:
        return self._run(host, GET_FIRST_BOOT, id=vm_id)

    def set_first_boot_dvd(self, host: str, vm_id: str, controller_number: int, controller_location: int) -> None:
        self._run(
            host,
            SET_FIRST_BOOT_DVD,
            id=vm_id,
            controller_number=controller_number,
            controller_location=controller_location,
        )

    # Network

    def get_adapters(self, host: str, vm_id: str) -> List[Dict[str, Any]]:
        return as_list(self._run(host, GET_ADAPTERS, id=vm_id))

    def add_adapter(self, host: str, vm_id: str, name: str) -> Dict[str, Any]:
        return self._run(host, ADD_ADAPTER, id=vm_id, name=name)

    def remove_adapter(self, host: str, vm_id: str, adapter_id: str) -> None:
        self._run(host, REMOVE_ADAPTER, id=vm_id, adapter_id=adapter_id)

    def connect_adapter(self, host: str, vm_id: str, adapter_id: str, switch: str) -> None:
        self._run(host, CONNECT_ADAPTER, id=vm_id, adapter_id=adapter_id, switch=switch)

    def disconnect_adapter(self, host: str, vm_id: str, adapter_id: str) -> None:
        self._run(host, DISCONNECT_ADAPTER, id=vm_id, adapter_id=adapter_id)

    def set_adapter_vlan(
        self,
        host: str,
        vm_id: str,
        adapter_id: str,
        mode: str,
        access_id: Optional[int] = None,
        native_id: Optional[int] = None,
        allowed_ids: Optional[str] = None,
    ) -> None:
        self._run(
            host,
            SET_ADAPTER_VLAN,
            id=vm_id,
            adapter_id=adapter_id,
            mode=mode,
            access_id=access_id,
            native_id=native_id,
            allowed_ids=allowed_ids,
        )

    def set_adapter_isolation(
        self, host: str, vm_id: str, adapter_id: str, mode: str, default_id: Optional[int] = None
    ) -> None:
        self._run(host, SET_ADAPTER_ISOLATION, id=vm_id, adapter_id=adapter_id, mode=mode, default_id=default_id)

    def set_adapter_mac(self, host: str, vm_id: str, adapter_id: str, mac: str) -> None:
        self._run(host, SET_ADAPTER_MAC, id=vm_id, adapter_id=adapter_id, mac=mac)

    def set_adapter_options(self, host: str, vm_id: str, adapter_id: str, **options: bool) -> None:
        self._run(host, SET_ADAPTER_OPTIONS, id=vm_id, adapter_id=adapter_id, **options)

    def get_mac_pool(self, host: str) -> Dict[str, str]:
        return self._run(host, GET_MAC_POOL)

    def set_mac_pool_minimum(self, host: str, minimum: str) -> None:
        self._run(host, SET_MAC_POOL_MINIMUM, minimum=minimum)

    # Snapshots

    def get_snapshots(self, host: str, vm_id: str) -> List[str]:
        return as_list(self._run(host, GET_SNAPSHOTS, id=vm_id))

    def remove_snapshots(self, host: str, vm_id: str) -> None:
        self._run(host, REMOVE_SNAPSHOTS, id=vm_id)

    def is_merging(self, host: str, vm_id: str) -> bool:
        return bool(self._run(host, IS_MERGING, id=vm_id))

    # Failover cluster

    def get_cluster_group(self, host: str, cluster: str, vm_id: str) -> Optional[Dict[str, Any]]:
        return self._run(host, GET_CLUSTER_GROUP, cluster=cluster, id=vm_id)

    def add_cluster_role(self, host: str, cluster: str, vm_id: str) -> Dict[str, Any]:
        return self._run(host, ADD_CLUSTER_ROLE, cluster=cluster, id=vm_id)

    def set_cluster_group_priority(self, host: str, cluster: str, group: str, priority: int) -> None:
        self._run(host, SET_GROUP_PRIORITY, cluster=cluster, group=group, priority=priority)

    def get_affinity_rules(self, host: str, cluster: str) -> Dict[str, List[str]]:
        rules = as_list(self._run(host, GET_AFFINITY_RULES, cluster=cluster))
        return {rule["name"]: as_list(rule.get("groups")) for rule in rules}

    def add_group_to_affinity_rule(self, host: str, cluster: str, rule: str, group: str) -> None:
        self._run(host, ADD_TO_AFFINITY_RULE, cluster=cluster, rule=rule, group=group)

    def get_preferred_owners(self, host: str, cluster: str, group: str) -> List[str]:
        return as_list(self._run(host, GET_PREFERRED_OWNERS, cluster=cluster, group=group))

    def set_preferred_owners(self, host: str, cluster: str, group: str, nodes: List[str]) -> None:
        self._run(host, SET_PREFERRED_OWNERS, cluster=cluster, group=group, nodes=nodes)

    def start_cluster_group(self, host: str, cluster: str, group: str) -> None:
        self._run(host, START_CLUSTER_GROUP, cluster=cluster, group=group)

    def stop_cluster_group(self, host: str, cluster: str, group: str) -> None:
        self._run(host, STOP_CLUSTER_GROUP, cluster=cluster, group=group)

    def move_cluster_group(self, host: str, cluster: str, group: str) -> str:
        """Move a group to the best available node and return the new owner."""
        return self._run(host, MOVE_CLUSTER_GROUP, cluster=cluster, group=group)

    def remove_cluster_group(self, host: str, cluster: str, group: str) -> None:
        self._run(host, REMOVE_CLUSTER_GROUP, cluster=cluster, group=group)

    def move_csv_owner(self, host: str, cluster: str, path: str, node: str) -> bool:
        """Make node own the cluster shared volume holding path; False if path is not on a CSV."""
        return bool(self._run(host, MOVE_CSV_OWNER, cluster=cluster, path=path, node=node))

    # Files

    def copy_file(self, host: str, source: str, destination: str) -> None:
        self._run(host, COPY_FILE, source=source, destination=destination)

    def read_text(self, host: str, path: str) -> str:
        return self._run(host, READ_TEXT, path=path) or ""

    def write_text(self, host: str, path: str, content: str) -> None:
        self._run(host, WRITE_TEXT, path=path, content=content)

    def remove_item(self, host: str, path: str) -> bool:
        return bool(self._run(host, REMOVE_ITEM, path=path))

    def remove_empty_directory(self, host: str, path: str) -> bool:
        return bool(self._run(host, REMOVE_EMPTY_DIRECTORY, path=path))
