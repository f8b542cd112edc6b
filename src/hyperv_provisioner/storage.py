"""
Virtual disk files and their SCSI attachments.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from hyperv_provisioner.exceptions import PreconditionFailedError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import SCSI_CONTROLLER_LIMIT, SCSI_LOCATION_LIMIT, DesiredDisk, DesiredVM, LiveVM
from hyperv_provisioner.policy import ConfirmationPolicy, DenyAll

logger = logging.getLogger(__name__)

SCSI = "SCSI"

Slot = Tuple[int, int]


@dataclass(frozen=True)
class DiskPlacement:
    """A desired disk with its controller slot resolved."""

    disk: DesiredDisk
    controller_number: int
    controller_location: int
    explicit: bool

    @property
    def slot(self) -> Slot:
        return self.controller_number, self.controller_location


def _slot(attachment: Dict[str, Any]) -> Slot:
    return int(attachment["controller_number"]), int(attachment["controller_location"])


def _is_scsi(attachment: Dict[str, Any]) -> bool:
    return str(attachment.get("controller_type", SCSI)).upper() == SCSI


def _same_path(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.casefold() == b.casefold()


class StorageReconciler:
    """Creates disk files and attaches them at their desired controller slots."""

    def __init__(self, hv: HyperVClient, confirm: Optional[ConfirmationPolicy] = None):
        self.hv = hv
        self.confirm = confirm or DenyAll()

    def plan(self, vm: LiveVM, desired: DesiredVM) -> List[DiskPlacement]:
        """
        Resolve a slot for every desired disk.

        Disks with no controller number or location keep their current
        attachment, or get the first SCSI slot not claimed by another desired
        disk or occupied by another device. A path listed twice is attached
        once.
        """
        attached = [a for a in self.hv.get_hard_disks(vm.host, vm.id) if _is_scsi(a)]
        occupied: Set[Slot] = {_slot(a) for a in attached}
        occupied |= {_slot(d) for d in self.hv.get_dvd_drives(vm.host, vm.id)}

        unique: List[DesiredDisk] = []
        seen = set()
        for disk in desired.disks:
            if disk.key in seen:
                logger.warning(f"VM {vm.name}: disk {disk.path} is listed more than once; attaching it once")
                continue
            seen.add(disk.key)
            unique.append(disk)

        claimed: Set[Slot] = set()
        for disk in unique:
            if disk.controller_number is not None and disk.controller_location is not None:
                claimed.add((disk.controller_number, disk.controller_location))

        placements = []
        for disk in unique:
            if disk.controller_number is not None and disk.controller_location is not None:
                placements.append(DiskPlacement(disk, disk.controller_number, disk.controller_location, True))
                continue

            current = next((a for a in attached if _same_path(a["path"], disk.path)), None)
            if current is not None and (
                disk.controller_number is None or disk.controller_number == current["controller_number"]
            ) and (disk.controller_location is None or disk.controller_location == current["controller_location"]):
                slot = _slot(current)
            else:
                slot = self._free_slot(disk, occupied | claimed)
            claimed.add(slot)
            placements.append(DiskPlacement(disk, slot[0], slot[1], False))
        return placements

    @staticmethod
    def _free_slot(disk: DesiredDisk, taken: Set[Slot]) -> Slot:
        controllers = [disk.controller_number] if disk.controller_number is not None else range(SCSI_CONTROLLER_LIMIT)
        locations = [disk.controller_location] if disk.controller_location is not None else range(SCSI_LOCATION_LIMIT)
        for number in controllers:
            for location in locations:
                if (number, location) not in taken:
                    return number, location
        raise PreconditionFailedError(f"No free SCSI slot for disk {disk.path}")

    def ensure_disks(self, vm: LiveVM, desired: DesiredVM, preserve: bool = False) -> None:
        for placement in self.plan(vm, desired):
            self.ensure_disk(vm, placement, preserve=preserve)

    def ensure_disk(self, vm: LiveVM, placement: DiskPlacement, preserve: bool = False) -> None:
        """
        Make placement.disk the one disk attached at its slot.

        Raises:
            PreconditionFailedError: If the slot holds a DVD drive, or a
                differently-sized image exists and using it is not confirmed
        """
        disk = placement.disk
        number, location = placement.slot
        attachments = self.hv.get_hard_disks(vm.host, vm.id)
        same_path = [a for a in attachments if _same_path(a["path"], disk.path)]

        if any(_is_scsi(a) and _slot(a) == placement.slot for a in same_path):
            for stray in same_path:
                if not (_is_scsi(stray) and _slot(stray) == placement.slot):
                    logger.info(f"💿 VM {vm.name}: detaching duplicate attachment of {disk.path}")
                    self._detach(vm, stray)
            return

        logger.info(f"💿 VM {vm.name}: attaching {disk.path} at SCSI {number}:{location}")

        for stray in same_path:
            logger.info(
                f"💿 VM {vm.name}: {disk.path} is attached at {stray['controller_type']} "
                f"{stray['controller_number']}:{stray['controller_location']}; moving it"
            )
            self._detach(vm, stray)
        if not same_path:
            self._ensure_file(vm, disk)

        self._ensure_controllers(vm, number)

        for dvd in self.hv.get_dvd_drives(vm.host, vm.id):
            if _slot(dvd) == placement.slot:
                raise PreconditionFailedError(
                    f"VM {vm.name}: SCSI {number}:{location} holds a DVD drive; cannot attach {disk.path}"
                )

        occupant = next(
            (a for a in self.hv.get_hard_disks(vm.host, vm.id) if _is_scsi(a) and _slot(a) == placement.slot),
            None,
        )
        if occupant is not None:
            logger.info(f"💿 VM {vm.name}: detaching {occupant['path']} from SCSI {number}:{location}")
            self._detach(vm, occupant)

        self.hv.add_hard_disk(vm.host, vm.id, disk.path, number, location)

        if occupant is not None and preserve:
            self._reattach_elsewhere(vm, occupant)
        elif occupant is not None:
            logger.warning(f"VM {vm.name}: {occupant['path']} left detached; the file was not deleted")
        logger.info(f"✅ VM {vm.name}: {disk.path} attached at SCSI {number}:{location}")

    def _ensure_file(self, vm: LiveVM, disk: DesiredDisk) -> None:
        """Create the image file unless one exists; a size mismatch needs consent to reuse."""
        existing = self.hv.get_vhd(vm.host, disk.path)
        if existing is None:
            logger.info(f"💾 Creating {disk.path} ({disk.size_bytes} bytes) on {vm.host}")
            self.hv.new_vhd(vm.host, disk.path, disk.size_bytes)
            return
        if int(existing["size"]) == disk.size_bytes:
            logger.info(f"💾 Reusing existing {disk.path}")
            return
        action = (
            f"Attach existing {disk.path} of {existing['size']} bytes to {vm.name} "
            f"instead of creating one of {disk.size_bytes} bytes"
        )
        if not self.confirm.confirm(action):
            raise PreconditionFailedError(
                f"VM {vm.name}: {disk.path} exists with size {existing['size']}, expected {disk.size_bytes}"
            )

    def _detach(self, vm: LiveVM, attachment: Dict[str, Any]) -> None:
        self.hv.remove_hard_disk(
            vm.host,
            vm.id,
            attachment.get("controller_type", SCSI),
            int(attachment["controller_number"]),
            int(attachment["controller_location"]),
        )

    def _ensure_controllers(self, vm: LiveVM, controller_number: int) -> None:
        count = self.hv.get_scsi_controller_count(vm.host, vm.id)
        while count <= controller_number:
            logger.info(f"🔌 VM {vm.name}: adding SCSI controller {count}")
            self.hv.add_scsi_controller(vm.host, vm.id)
            count += 1

    def _reattach_elsewhere(self, vm: LiveVM, attachment: Dict[str, Any]) -> None:
        taken = {_slot(a) for a in self.hv.get_hard_disks(vm.host, vm.id) if _is_scsi(a)}
        taken |= {_slot(d) for d in self.hv.get_dvd_drives(vm.host, vm.id)}
        count = self.hv.get_scsi_controller_count(vm.host, vm.id)
        for number in range(count):
            for location in range(SCSI_LOCATION_LIMIT):
                if (number, location) not in taken:
                    logger.info(f"💿 VM {vm.name}: preserving {attachment['path']} at SCSI {number}:{location}")
                    self.hv.add_hard_disk(vm.host, vm.id, attachment["path"], number, location)
                    return
        raise PreconditionFailedError(f"VM {vm.name}: no free SCSI slot to preserve {attachment['path']}")
