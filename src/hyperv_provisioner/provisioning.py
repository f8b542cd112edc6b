"""
OS provisioning strategies, one per deployment method.

Each strategy registers or prepares the VM so its first boot installs
the guest OS, and knows how to remove that registration again on
decommission.
"""

import base64
import logging
import re
from typing import Dict, Optional

from hyperv_provisioner.collaborators import SccmClient, WdsClient
from hyperv_provisioner.exceptions import ExternalOperationError, PreconditionFailedError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import (
    NULL_MAC,
    DeploymentMethod,
    DesiredVM,
    IsoDeployment,
    LiveVM,
    SccmDeployment,
    VhdDeployment,
    WdsDeployment,
)
from hyperv_provisioner.policy import ConfirmationPolicy, DenyAll, RetryPolicy

logger = logging.getLogger(__name__)

ANSWER_FILE_TARGET = r"Windows\Panther\unattend.xml"
SCCM_DOMAIN_VARIABLE = "OSDDomainName"
SCCM_OU_VARIABLE = "OSDDomainOUName"

_TOKEN_RE = re.compile(r"\{\{\s*([A-Z_]+)\s*\}\}")


def encode_admin_password(password: str) -> str:
    """Encode a local administrator password the way Windows Setup stores it (PlainText=false)."""
    return base64.b64encode((password + "AdministratorPassword").encode("utf-16-le")).decode("ascii")


def render_answer_file(template: str, tokens: Dict[str, Optional[str]]) -> str:
    """
    Substitute {{TOKEN}} placeholders.

    Lines still holding a placeholder with no value are commented out so
    setup ignores them.
    """
    values = {k: v for k, v in tokens.items() if v is not None}
    lines = []
    for line in template.splitlines():
        rendered = _TOKEN_RE.sub(lambda m: values.get(m.group(1), m.group(0)), line)
        if _TOKEN_RE.search(rendered):
            indent = rendered[: len(rendered) - len(rendered.lstrip())]
            rendered = f"{indent}<!-- {rendered.strip()} -->"
        lines.append(rendered)
    return "\n".join(lines) + ("\n" if template.endswith("\n") else "")


class ProvisioningStrategy:
    """Base strategy; subclasses implement apply and remove."""

    method: DeploymentMethod

    def __init__(self, hv: HyperVClient):
        self.hv = hv

    def provisioned(self, vm: LiveVM, desired: DesiredVM) -> bool:
        """True when the deployment is already in place and apply would only redo it."""
        return False

    def apply(self, vm: LiveVM, desired: DesiredVM) -> None:
        raise NotImplementedError

    def remove(self, vm: LiveVM, desired: DesiredVM) -> None:
        raise NotImplementedError


class IsoProvisioner(ProvisioningStrategy):
    """Boot the VM from an installation image."""

    method = DeploymentMethod.ISO

    def apply(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: IsoDeployment = desired.deployment
        if desired.generation != 2:
            raise PreconditionFailedError(f"VM {vm.name}: ISO boot through a SCSI DVD drive needs generation 2")

        drives = self.hv.get_dvd_drives(vm.host, vm.id)
        if drives:
            drive = drives[0]
            if not (drive.get("path") or "").casefold() == deployment.file_path.casefold():
                logger.info(f"📀 VM {vm.name}: inserting {deployment.file_path}")
                self.hv.set_dvd_path(
                    vm.host, vm.id, drive["controller_number"], drive["controller_location"], deployment.file_path
                )
        else:
            if self.hv.get_scsi_controller_count(vm.host, vm.id) == 0:
                logger.info(f"🔌 VM {vm.name}: adding SCSI controller for the DVD drive")
                self.hv.add_scsi_controller(vm.host, vm.id)
            logger.info(f"📀 VM {vm.name}: adding DVD drive with {deployment.file_path}")
            drive = self.hv.add_dvd_drive(vm.host, vm.id, 0, deployment.file_path)

        first = self.hv.get_first_boot_device(vm.host, vm.id)
        if (
            first is None
            or first.get("type") != "DvdDrive"
            or first.get("controller_number") != drive["controller_number"]
            or first.get("controller_location") != drive["controller_location"]
        ):
            logger.info(f"📀 VM {vm.name}: DVD drive set as first boot device")
            self.hv.set_first_boot_dvd(vm.host, vm.id, drive["controller_number"], drive["controller_location"])

    def remove(self, vm: LiveVM, desired: DesiredVM) -> None:
        logger.debug(f"VM {vm.name}: ISO deployment has no external registration")


class WdsProvisioner(ProvisioningStrategy):
    """Pre-stage the VM on a standalone WDS server."""

    method = DeploymentMethod.WDS

    def __init__(self, hv: HyperVClient, wds: WdsClient):
        super().__init__(hv)
        self.wds = wds

    def provisioned(self, vm: LiveVM, desired: DesiredVM) -> bool:
        deployment: WdsDeployment = desired.deployment
        device_id = self.hv.get_bios_guid(vm.host, vm.id)
        clients = self.wds.find_clients(deployment.server, device_id, vm.name)
        return len(clients) == 1 and self._matches(clients[0], device_id, vm.name)

    @staticmethod
    def _matches(client: Dict, device_id: str, name: str) -> bool:
        same_id = (client.get("device_id") or "").strip("{}").upper() == device_id.strip("{}").upper()
        return same_id and (client.get("device_name") or "").casefold() == name.casefold()

    def apply(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: WdsDeployment = desired.deployment
        mode = self.wds.get_mode(deployment.server)
        if mode != "Standalone":
            raise PreconditionFailedError(
                f"WDS server {deployment.server} is in {mode} mode; client pre-staging needs Standalone mode"
            )
        device_id = self.hv.get_bios_guid(vm.host, vm.id)
        self._remove_clients(deployment.server, device_id, vm.name)
        logger.info(f"📡 {deployment.server}: registering {vm.name} ({device_id}) with {deployment.unattend_path}")
        self.wds.new_client(deployment.server, device_id, vm.name, deployment.unattend_path)

    def remove(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: WdsDeployment = desired.deployment
        self._remove_clients(deployment.server, self.hv.get_bios_guid(vm.host, vm.id), vm.name)

    def _remove_clients(self, server: str, device_id: str, name: str) -> None:
        for client in self.wds.find_clients(server, device_id, name):
            logger.info(f"📡 {server}: removing client {client.get('device_name')} ({client.get('device_id')})")
            if client.get("device_id"):
                self.wds.remove_client(server, device_id=client["device_id"])
            else:
                self.wds.remove_client(server, device_name=client["device_name"])


class SccmProvisioner(ProvisioningStrategy):
    """Import the VM into Configuration Manager and target it with collections."""

    method = DeploymentMethod.SCCM

    def __init__(self, hv: HyperVClient, sccm: SccmClient, retry: RetryPolicy):
        super().__init__(hv)
        self.sccm = sccm
        self.retry = retry

    @staticmethod
    def _same_guid(a: Optional[str], b: str) -> bool:
        return (a or "").strip("{}").upper() == b.strip("{}").upper()

    def _usable(self, device: Dict, guid: str) -> bool:
        if device.get("client_active"):
            logger.warning(
                f"SCCM device {device['name']} ({device['resource_id']}) already has an active client; ignored"
            )
            return False
        if device.get("smbios_guid") and not self._same_guid(device["smbios_guid"], guid):
            logger.warning(
                f"SCCM device {device['name']} ({device['resource_id']}) has a different SMBIOS GUID "
                f"{device['smbios_guid']}; ignored"
            )
            return False
        return True

    def find_device(self, sccm: SccmClient, server: str, name: str, guid: str) -> Optional[int]:
        """Resource id of a reusable device record, searched by name then by GUID."""
        for device in sccm.find_devices_by_name(server, name):
            if self._usable(device, guid):
                return int(device["resource_id"])
        for device in sccm.find_devices_by_guid(server, guid):
            if self._usable(device, guid):
                return int(device["resource_id"])
        return None

    def apply(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: SccmDeployment = desired.deployment
        server = deployment.server
        sccm = self.sccm.for_site(deployment.site_code)
        guid = self.hv.get_bios_guid(vm.host, vm.id)

        resource_id = self.find_device(sccm, server, vm.name, guid)
        if resource_id is None:
            adapters = self.hv.get_adapters(vm.host, vm.id)
            mac = next((a["mac"] for a in adapters if a.get("mac") and a["mac"] != NULL_MAC), None)
            if mac:
                mac = ":".join(mac[i : i + 2] for i in range(0, 12, 2))
            logger.info(f"🖥️  {server}: importing {vm.name} ({guid})")
            resource_id = sccm.import_device(server, vm.name, guid, mac)
        else:
            logger.info(f"🖥️  {server}: reusing device {resource_id} for {vm.name}")

        for variable, value in ((SCCM_DOMAIN_VARIABLE, deployment.domain_name), (SCCM_OU_VARIABLE, deployment.ou_path)):
            if value and sccm.get_variable(server, resource_id, variable) != value:
                logger.info(f"🖥️  {server}: {variable} = {value}")
                sccm.set_variable(server, resource_id, variable, value)

        for collection in deployment.collections:
            if not sccm.has_membership_rule(server, collection, resource_id):
                logger.info(f"🖥️  {server}: adding {vm.name} to collection {collection}")
                sccm.add_membership_rule(server, collection, resource_id)
            visible = self.retry.wait_until(
                lambda: sccm.is_member(server, collection, resource_id),
                f"{vm.name} to appear in collection {collection}",
            )
            if not visible:
                raise ExternalOperationError(
                    f"{vm.name} did not appear in SCCM collection {collection}",
                    host=server,
                    operation="Get-CMCollectionMember",
                )

    def remove(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: SccmDeployment = desired.deployment
        server = deployment.server
        sccm = self.sccm.for_site(deployment.site_code)
        guid = self.hv.get_bios_guid(vm.host, vm.id)
        devices = {}
        for device in sccm.find_devices_by_guid(server, guid):
            devices[int(device["resource_id"])] = device
        for device in sccm.find_devices_by_name(server, vm.name):
            if not device.get("smbios_guid") or self._same_guid(device["smbios_guid"], guid):
                devices[int(device["resource_id"])] = device
        for resource_id, device in devices.items():
            logger.info(f"🖥️  {server}: clearing PXE flag and removing device {device['name']} ({resource_id})")
            sccm.clear_pxe_deployment(server, resource_id)
            sccm.remove_device(server, resource_id)


class VhdProvisioner(ProvisioningStrategy):
    """Overwrite the boot disk with a prepared image and inject an answer file."""

    method = DeploymentMethod.VHD

    def __init__(
        self,
        hv: HyperVClient,
        confirm: Optional[ConfirmationPolicy] = None,
        installed_threshold_bytes: int = 12 * 1024**3,
        credentials: Optional[Dict[str, Optional[str]]] = None,
    ):
        super().__init__(hv)
        self.confirm = confirm or DenyAll()
        self.installed_threshold_bytes = installed_threshold_bytes
        self.credentials = credentials or {}

    def provisioned(self, vm: LiveVM, desired: DesiredVM) -> bool:
        """The image is only laid down on the pass that creates the VM."""
        return not vm.created

    def tokens(self, desired: DesiredVM) -> Dict[str, Optional[str]]:
        deployment: VhdDeployment = desired.deployment
        password = self.credentials.get("admin_password")
        return {
            "COMPUTER_NAME": desired.name,
            "ADMIN_PASSWORD": encode_admin_password(password) if password else None,
            "DOMAIN_JOIN_USER": self.credentials.get("domain_join_user"),
            "DOMAIN_JOIN_PASSWORD": self.credentials.get("domain_join_password"),
            "DOMAIN_NAME": deployment.domain_name,
            "DOMAIN_OU": deployment.ou_path,
        }

    def apply(self, vm: LiveVM, desired: DesiredVM) -> None:
        deployment: VhdDeployment = desired.deployment
        slot = (deployment.controller_number, deployment.controller_location)
        boot = next(
            (
                d
                for d in self.hv.get_hard_disks(vm.host, vm.id)
                if (d["controller_number"], d["controller_location"]) == slot
                and str(d.get("controller_type", "SCSI")).upper() == "SCSI"
            ),
            None,
        )
        if boot is None or not boot.get("path"):
            raise PreconditionFailedError(f"VM {vm.name}: no boot disk at SCSI {slot[0]}:{slot[1]}")
        target = boot["path"]

        existing = self.hv.get_vhd(vm.host, target)
        if existing and int(existing.get("file_size") or 0) > self.installed_threshold_bytes:
            logger.warning(
                f"VM {vm.name}: {target} is {existing['file_size']} bytes, larger than an empty disk is "
                "expected to be; it may already hold an installed OS"
            )
            if not self.confirm.confirm(f"Overwrite {target} of {vm.name} with {deployment.source_path}"):
                raise PreconditionFailedError(f"VM {vm.name}: refusing to overwrite {target}")

        logger.info(f"📦 VM {vm.name}: copying {deployment.source_path} -> {target}")
        self.hv.copy_file(vm.host, deployment.source_path, target)

        wanted = next((d.size_bytes for d in desired.disks if d.key == target.casefold()), None)
        copied = self.hv.get_vhd(vm.host, target)
        if wanted and copied and wanted > int(copied["size"]):
            logger.info(f"📦 VM {vm.name}: growing {target} to {wanted} bytes")
            self.hv.resize_vhd(vm.host, target, wanted)

        if not deployment.unattend_path:
            return
        template = self.hv.read_text(vm.host, deployment.unattend_path)
        answer = render_answer_file(template, self.tokens(desired))
        root = self.hv.mount_vhd(vm.host, target)
        try:
            destination = root.rstrip("\\") + "\\" + ANSWER_FILE_TARGET
            logger.info(f"📝 VM {vm.name}: writing answer file to {destination}")
            self.hv.write_text(vm.host, destination, answer)
        finally:
            self.hv.dismount_vhd(vm.host, target)

    def remove(self, vm: LiveVM, desired: DesiredVM) -> None:
        logger.debug(f"VM {vm.name}: VHD deployment has no external registration")


class ProvisioningDispatcher:
    """Routes a VM to the strategy for its deployment method."""

    def __init__(self, strategies: Dict[DeploymentMethod, ProvisioningStrategy]):
        self.strategies = strategies

    def _strategy(self, desired: DesiredVM) -> Optional[ProvisioningStrategy]:
        if desired.deployment is None:
            return None
        strategy = self.strategies.get(desired.deployment.method)
        if strategy is None:
            raise PreconditionFailedError(f"No provisioning strategy for {desired.deployment.method.value}")
        return strategy

    def provision(self, vm: LiveVM, desired: DesiredVM) -> bool:
        strategy = self._strategy(desired)
        if strategy is None:
            return False
        if strategy.provisioned(vm, desired):
            logger.info(f"VM {vm.name}: {strategy.method.value} deployment already in place; skipped")
            return False
        logger.info(f"🚀 VM {vm.name}: provisioning with {strategy.method.value}")
        strategy.apply(vm, desired)
        return True

    def deprovision(self, vm: LiveVM, desired: DesiredVM) -> bool:
        strategy = self._strategy(desired)
        if strategy is None:
            return False
        logger.info(f"🧹 VM {vm.name}: removing {strategy.method.value} registration")
        strategy.remove(vm, desired)
        return True
