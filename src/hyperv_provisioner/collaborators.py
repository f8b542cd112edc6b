"""
Clients for the services the engine registers VMs with.

DHCP, WDS, SCCM, Active Directory and DNS operations run through the same
broker as the Hyper-V operations, against the server that hosts each
service. Failures are reported as ExternalOperationError.
"""

import logging
from typing import Any, Dict, List, Optional

from hyperv_provisioner.broker import ExecutionContext
from hyperv_provisioner.exceptions import ExecutionError, ExternalOperationError, SessionUnavailableError
from hyperv_provisioner.powershell import Operation, as_list

logger = logging.getLogger(__name__)


class CollaboratorClient:
    """Shared invocation wrapper for collaborator services."""

    service = "collaborator"

    def __init__(self, context: ExecutionContext):
        self.context = context

    def _run(self, server: str, operation: Operation, **args: Any) -> Any:
        try:
            return self.context.invoke(server, operation, args)
        except SessionUnavailableError:
            raise
        except ExecutionError as e:
            raise ExternalOperationError(
                f"{self.service} operation {operation.name} failed on {server}: {e}",
                host=server,
                operation=operation.name,
            ) from e


# DHCP

_RESERVATION = """
function ConvertTo-Reservation($r) {
    [ordered]@{ ip = $r.IPAddress.IPAddressToString; client_id = $r.ClientId; name = $r.Name; scope = $r.ScopeId.IPAddressToString }
}
"""

DHCP_GET_BY_IP = Operation("Get-DhcpServerv4Reservation -IPAddress", _RESERVATION + """
$r = Get-DhcpServerv4Reservation -ScopeId $p.scope -IPAddress $p.ip -ErrorAction SilentlyContinue
if ($r) { ConvertTo-Reservation $r }
""")

DHCP_GET_BY_CLIENT = Operation("Get-DhcpServerv4Reservation -ClientId", _RESERVATION + """
Get-DhcpServerv4Reservation -ScopeId $p.scope | Where-Object { $_.ClientId -eq $p.client_id } |
    ForEach-Object { ConvertTo-Reservation $_ }
""")

DHCP_ADD = Operation(
    "Add-DhcpServerv4Reservation",
    "Add-DhcpServerv4Reservation -ScopeId $p.scope -IPAddress $p.ip -ClientId $p.client_id -Name $p.name",
)

DHCP_REMOVE = Operation("Remove-DhcpServerv4Reservation", "Remove-DhcpServerv4Reservation -IPAddress $p.ip")

DHCP_GET_ROUTER = Operation("Get-DhcpServerv4OptionValue", """
$opt = Get-DhcpServerv4OptionValue -ReservedIP $p.ip -OptionId 3 -ErrorAction SilentlyContinue
if ($opt) { @($opt.Value) }
""")

DHCP_SET_ROUTER = Operation("Set-DhcpServerv4OptionValue", "Set-DhcpServerv4OptionValue -ReservedIP $p.ip -Router $p.router")

DHCP_GET_FAILOVER = Operation("Get-DhcpServerv4Failover", """
$f = Get-DhcpServerv4Failover -ScopeId $p.scope -ErrorAction SilentlyContinue
if ($f) { [ordered]@{ name = $f.Name; partner = $f.PartnerServer } }
""")

DHCP_REPLICATE = Operation(
    "Invoke-DhcpServerv4FailoverReplication", "Invoke-DhcpServerv4FailoverReplication -ScopeId $p.scope -Force | Out-Null"
)


class DhcpClient(CollaboratorClient):
    """Address reservations on a Windows DHCP server."""

    service = "DHCP"

    def get_reservation_by_ip(self, server: str, scope: str, ip: str) -> Optional[Dict[str, Any]]:
        return self._run(server, DHCP_GET_BY_IP, scope=scope, ip=ip)

    def get_reservations_by_client_id(self, server: str, scope: str, client_id: str) -> List[Dict[str, Any]]:
        return as_list(self._run(server, DHCP_GET_BY_CLIENT, scope=scope, client_id=client_id))

    def add_reservation(self, server: str, scope: str, ip: str, client_id: str, name: str) -> None:
        self._run(server, DHCP_ADD, scope=scope, ip=ip, client_id=client_id, name=name)

    def remove_reservation(self, server: str, scope: str, ip: str) -> None:
        self._run(server, DHCP_REMOVE, scope=scope, ip=ip)

    def get_router(self, server: str, ip: str) -> List[str]:
        return as_list(self._run(server, DHCP_GET_ROUTER, ip=ip))

    def set_router(self, server: str, ip: str, router: str) -> None:
        self._run(server, DHCP_SET_ROUTER, ip=ip, router=router)

    def get_failover(self, server: str, scope: str) -> Optional[Dict[str, Any]]:
        return self._run(server, DHCP_GET_FAILOVER, scope=scope)

    def replicate(self, server: str, scope: str) -> None:
        self._run(server, DHCP_REPLICATE, scope=scope)


# WDS

WDS_GET_MODE = Operation("wdsutil /Get-Server", """
$config = wdsutil /Get-Server /Show:Config | Out-String
if ($LASTEXITCODE -ne 0) { throw "wdsutil failed: $config" }
if ($config -match 'Standalone configuration:\\s*Yes') { 'Standalone' }
elseif ($config -match 'Standalone configuration:\\s*No') { 'Integrated' }
else { throw "Standalone configuration not reported by wdsutil: $config" }
""")

WDS_FIND_CLIENTS = Operation("Get-WdsClient", """
$found = @()
$found += @(Get-WdsClient -DeviceID $p.device_id -ErrorAction SilentlyContinue)
$found += @(Get-WdsClient -DeviceName $p.device_name -ErrorAction SilentlyContinue)
$found | Where-Object { $_ } | ForEach-Object { [ordered]@{ device_id = $_.DeviceID; device_name = $_.DeviceName } }
""")

WDS_REMOVE_CLIENT = Operation("Remove-WdsClient", """
if ($p.device_id) { Remove-WdsClient -DeviceID $p.device_id } else { Remove-WdsClient -DeviceName $p.device_name }
""")

WDS_NEW_CLIENT = Operation(
    "New-WdsClient",
    "New-WdsClient -DeviceID $p.device_id -DeviceName $p.device_name -WdsClientUnattend $p.unattend | Out-Null",
)


class WdsClient(CollaboratorClient):
    """Pre-staged client registrations on a Windows Deployment Services server."""

    service = "WDS"

    def get_mode(self, server: str) -> str:
        """Return 'Standalone' or 'Integrated'."""
        mode = self._run(server, WDS_GET_MODE)
        if mode not in ("Standalone", "Integrated"):
            raise ExternalOperationError(
                f"WDS server {server} reported an unknown mode {mode!r}", host=server, operation=WDS_GET_MODE.name
            )
        return mode

    def find_clients(self, server: str, device_id: str, device_name: str) -> List[Dict[str, Any]]:
        """Registrations matching either the device id or the device name."""
        clients = as_list(self._run(server, WDS_FIND_CLIENTS, device_id=device_id, device_name=device_name))
        unique = {}
        for client in clients:
            unique[(client.get("device_id") or "", client.get("device_name") or "")] = client
        return list(unique.values())

    def remove_client(self, server: str, device_id: Optional[str] = None, device_name: Optional[str] = None) -> None:
        self._run(server, WDS_REMOVE_CLIENT, device_id=device_id, device_name=device_name)

    def new_client(self, server: str, device_id: str, device_name: str, unattend: str) -> None:
        self._run(server, WDS_NEW_CLIENT, device_id=device_id, device_name=device_name, unattend=unattend)


# SCCM

_CM_SITE = """
Import-Module (Join-Path $env:SMS_ADMIN_UI_PATH '..\\ConfigurationManager.psd1')
$site = $p.site_code
if (-not $site) { $site = (Get-PSDrive -PSProvider CMSite | Select-Object -First 1).Name }
Set-Location "$($site):"
function ConvertTo-Device($d) {
    [ordered]@{
        resource_id = [int]$d.ResourceID
        name = $d.Name
        smbios_guid = $d.SMBIOSGUID
        client_active = ([bool]$d.Client -and [bool]$d.Active)
    }
}
"""

SCCM_FIND_BY_NAME = Operation("Find-CMDevice -Name", _CM_SITE + """
Get-CimInstance -Namespace "root\\sms\\site_$site" -ClassName SMS_R_System -Filter "Name='$($p.name)'" |
    ForEach-Object { ConvertTo-Device $_ }
""")

SCCM_FIND_BY_GUID = Operation("Find-CMDevice -SMBIOSGUID", _CM_SITE + """
Get-CimInstance -Namespace "root\\sms\\site_$site" -ClassName SMS_R_System -Filter "SMBIOSGUID='$($p.guid)'" |
    ForEach-Object { ConvertTo-Device $_ }
""")

SCCM_IMPORT = Operation("Import-CMComputerInformation", _CM_SITE + """
Import-CMComputerInformation -ComputerName $p.name -SMBiosGuid $p.guid -MacAddress $p.mac -CollectionName 'All Systems'
$d = Get-CimInstance -Namespace "root\\sms\\site_$site" -ClassName SMS_R_System -Filter "SMBIOSGUID='$($p.guid)'" |
    Sort-Object ResourceID -Descending | Select-Object -First 1
if ($null -eq $d) { throw "Imported device $($p.name) not found" }
[int]$d.ResourceID
""")

SCCM_GET_VARIABLE = Operation("Get-CMDeviceVariable", _CM_SITE + """
$v = Get-CMDeviceVariable -ResourceId $p.resource_id -VariableName $p.variable
if ($v) { $v.Value }
""")

SCCM_SET_VARIABLE = Operation("Set-CMDeviceVariable", _CM_SITE + """
if (Get-CMDeviceVariable -ResourceId $p.resource_id -VariableName $p.variable) {
    Set-CMDeviceVariable -ResourceId $p.resource_id -VariableName $p.variable -NewVariableValue $p.value
} else {
    New-CMDeviceVariable -ResourceId $p.resource_id -VariableName $p.variable -VariableValue $p.value | Out-Null
}
""")

SCCM_HAS_RULE = Operation("Get-CMDeviceCollectionDirectMembershipRule", _CM_SITE + """
[bool](Get-CMDeviceCollectionDirectMembershipRule -CollectionName $p.collection -ResourceId $p.resource_id)
""")

SCCM_ADD_RULE = Operation("Add-CMDeviceCollectionDirectMembershipRule", _CM_SITE + """
Add-CMDeviceCollectionDirectMembershipRule -CollectionName $p.collection -ResourceId $p.resource_id
Invoke-CMCollectionUpdate -Name $p.collection
""")

SCCM_IS_MEMBER = Operation("Get-CMCollectionMember", _CM_SITE + """
[bool](Get-CMCollectionMember -CollectionName $p.collection -ResourceId $p.resource_id)
""")

SCCM_CLEAR_PXE = Operation("Clear-CMPxeDeployment", _CM_SITE + """
Get-CMDevice -ResourceId $p.resource_id | Clear-CMPxeDeployment
""")

SCCM_REMOVE = Operation("Remove-CMDevice", _CM_SITE + "Remove-CMDevice -ResourceId $p.resource_id -Force")


class SccmClient(CollaboratorClient):
    """Device records, variables and collections in Configuration Manager."""

    service = "SCCM"

    def __init__(self, context: ExecutionContext, site_code: Optional[str] = None):
        super().__init__(context)
        self.site_code = site_code

    def for_site(self, site_code: Optional[str]) -> "SccmClient":
        """Client bound to site_code; None keeps the current binding (the first CMSite drive by default)."""
        if not site_code or site_code == self.site_code:
            return self
        return SccmClient(self.context, site_code)

    def _cm(self, server: str, operation: Operation, **args: Any) -> Any:
        return self._run(server, operation, site_code=self.site_code, **args)

    def find_devices_by_name(self, server: str, name: str) -> List[Dict[str, Any]]:
        return as_list(self._cm(server, SCCM_FIND_BY_NAME, name=name))

    def find_devices_by_guid(self, server: str, guid: str) -> List[Dict[str, Any]]:
        return as_list(self._cm(server, SCCM_FIND_BY_GUID, guid=guid))

    def import_device(self, server: str, name: str, guid: str, mac: Optional[str]) -> int:
        return int(self._cm(server, SCCM_IMPORT, name=name, guid=guid, mac=mac))

    def get_variable(self, server: str, resource_id: int, variable: str) -> Optional[str]:
        return self._cm(server, SCCM_GET_VARIABLE, resource_id=resource_id, variable=variable)

    def set_variable(self, server: str, resource_id: int, variable: str, value: str) -> None:
        self._cm(server, SCCM_SET_VARIABLE, resource_id=resource_id, variable=variable, value=value)

    def has_membership_rule(self, server: str, collection: str, resource_id: int) -> bool:
        return bool(self._cm(server, SCCM_HAS_RULE, collection=collection, resource_id=resource_id))

    def add_membership_rule(self, server: str, collection: str, resource_id: int) -> None:
        self._cm(server, SCCM_ADD_RULE, collection=collection, resource_id=resource_id)

    def is_member(self, server: str, collection: str, resource_id: int) -> bool:
        return bool(self._cm(server, SCCM_IS_MEMBER, collection=collection, resource_id=resource_id))

    def clear_pxe_deployment(self, server: str, resource_id: int) -> None:
        self._cm(server, SCCM_CLEAR_PXE, resource_id=resource_id)

    def remove_device(self, server: str, resource_id: int) -> None:
        self._cm(server, SCCM_REMOVE, resource_id=resource_id)


# Active Directory

AD_GET_COMPUTER = Operation("Get-ADComputer", """
$c = Get-ADComputer -Filter "Name -eq '$($p.name)'"
if ($c) { [ordered]@{ name = $c.Name; distinguished_name = $c.DistinguishedName; sid = $c.SID.Value } }
""")

AD_REMOVE_COMPUTER = Operation(
    "Remove-ADObject", "Remove-ADObject -Identity $p.distinguished_name -Recursive -Confirm:$false"
)


class DirectoryClient(CollaboratorClient):
    """Computer objects in Active Directory."""

    service = "Active Directory"

    def get_computer(self, server: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        return self._run(server, AD_GET_COMPUTER, name=name)

    def remove_computer(self, server: Optional[str], distinguished_name: str) -> None:
        self._run(server, AD_REMOVE_COMPUTER, distinguished_name=distinguished_name)


# DNS

DNS_GET_RECORDS = Operation("Get-DnsServerResourceRecord", """
Get-DnsServerResourceRecord -ZoneName $p.zone -Name $p.name -ErrorAction SilentlyContinue |
    ForEach-Object { [ordered]@{ name = $_.HostName; type = $_.RecordType } }
""")

DNS_REMOVE_RECORDS = Operation(
    "Remove-DnsServerResourceRecord",
    "Remove-DnsServerResourceRecord -ZoneName $p.zone -Name $p.name -RRType $p.type -Force",
)


class DnsClient(CollaboratorClient):
    """Resource records on a Windows DNS server."""

    service = "DNS"

    def get_records(self, server: Optional[str], zone: str, name: str) -> List[Dict[str, Any]]:
        return as_list(self._run(server, DNS_GET_RECORDS, zone=zone, name=name))

    def remove_records(self, server: Optional[str], zone: str, name: str, record_type: str) -> None:
        self._run(server, DNS_REMOVE_RECORDS, zone=zone, name=name, type=record_type)
