"""
VM object, processor, memory, firmware settings and virtual TPM.
"""

import logging
from typing import Any, Dict, Optional

from hyperv_provisioner.exceptions import VMNotFoundError
from hyperv_provisioner.hyperv import HyperVClient
from hyperv_provisioner.models import DesiredVM, LiveVM
from hyperv_provisioner.topology import Resolution

logger = logging.getLogger(__name__)


def hw_threads_per_core(desired: DesiredVM) -> int:
    """1 disables SMT for the guest; 0 inherits the host topology."""
    return 1 if desired.disable_smt else 0


class ComputeReconciler:
    """Creates the VM object and converges its compute settings."""

    def __init__(self, hv: HyperVClient, system_settings: Optional[Dict[str, Any]] = None):
        self.hv = hv
        self.system_settings = dict(system_settings or {})

    def ensure_vm(self, desired: DesiredVM, resolution: Resolution) -> LiveVM:
        """
        Return the live VM for desired, creating it when absent.

        Raises:
            VMNotFoundError: If the VM is absent and there is no host to place it on
        """
        if resolution.vm is not None:
            vm = resolution.vm
        else:
            if not resolution.host:
                raise VMNotFoundError(
                    f"VM {desired.name} does not exist and its record names no hostName to create it on"
                )
            vm = self.create_vm(desired, resolution.host)

        self.ensure_processor(vm, desired)
        self.ensure_memory(vm, desired)
        self.ensure_system_settings(vm)
        self.ensure_tpm(vm, desired)
        return vm

    def create_vm(self, desired: DesiredVM, host: str) -> LiveVM:
        """Create the VM with no network adapters and apply processor policy."""
        logger.info(f"🆕 Creating VM {desired.name} on {host} at {desired.path} (generation {desired.generation})")
        record = self.hv.new_vm(
            host,
            name=desired.name,
            path=desired.path,
            generation=desired.generation,
            startup_bytes=desired.memory.startup_bytes,
        )
        vm = LiveVM.from_record(record, host)
        vm.host = host
        vm.created = True
        self.hv.set_processor(
            host, vm.id, count=desired.processor_count, hw_threads_per_core=hw_threads_per_core(desired)
        )
        logger.info(f"✅ Created VM {vm.name} ({vm.id})")
        return vm

    def ensure_processor(self, vm: LiveVM, desired: DesiredVM) -> None:
        if vm.created:
            return
        current = self.hv.get_processor(vm.host, vm.id)
        threads = hw_threads_per_core(desired)
        if current["count"] == desired.processor_count and int(current.get("hw_threads_per_core") or 0) == threads:
            return
        if vm.running:
            logger.warning(
                f"VM {vm.name}: processor settings differ ({current['count']} -> {desired.processor_count}) "
                "but the VM is running; they will be applied once it is off"
            )
            return
        logger.info(
            f"🔧 VM {vm.name}: processors {current['count']} -> {desired.processor_count}, threads per core {threads}"
        )
        self.hv.set_processor(vm.host, vm.id, count=desired.processor_count, hw_threads_per_core=threads)

    def ensure_memory(self, vm: LiveVM, desired: DesiredVM) -> None:
        """Static memory, or dynamic memory whose range always contains startup."""
        policy = desired.memory
        minimum, maximum = policy.effective_bounds()
        current = self.hv.get_memory(vm.host, vm.id)

        if policy.dynamic:
            in_sync = (
                bool(current["dynamic"])
                and current["startup"] == policy.startup_bytes
                and current["minimum"] == minimum
                and current["maximum"] == maximum
            )
        else:
            in_sync = not current["dynamic"] and current["startup"] == policy.startup_bytes
        if in_sync:
            return

        if vm.running:
            logger.warning(f"VM {vm.name}: memory settings differ but the VM is running; not changed")
            return
        if policy.dynamic:
            if (minimum, maximum) != (policy.minimum_bytes, policy.maximum_bytes):
                logger.warning(
                    f"VM {vm.name}: dynamic memory range widened to {minimum}-{maximum} bytes "
                    f"to contain startup {policy.startup_bytes}"
                )
            logger.info(f"🔧 VM {vm.name}: dynamic memory {minimum}/{policy.startup_bytes}/{maximum}")
            self.hv.set_memory(
                vm.host, vm.id, dynamic=True, startup=policy.startup_bytes, minimum=minimum, maximum=maximum
            )
        else:
            logger.info(f"🔧 VM {vm.name}: static memory {policy.startup_bytes}")
            self.hv.set_memory(vm.host, vm.id, dynamic=False, startup=policy.startup_bytes)

    def ensure_system_settings(self, vm: LiveVM) -> None:
        """Push firmware/system settings only when at least one field differs."""
        if not self.system_settings:
            return
        live = self.hv.get_system_settings(vm.host, vm.id, list(self.system_settings))
        changes = {name: value for name, value in self.system_settings.items() if live.get(name) != value}
        if not changes:
            return
        logger.info(f"🔧 VM {vm.name}: system settings {changes}")
        self.hv.set_system_settings(vm.host, vm.id, changes)

    def ensure_tpm(self, vm: LiveVM, desired: DesiredVM) -> None:
        if not desired.enable_tpm:
            return
        if desired.generation != 2:
            logger.warning(f"VM {vm.name}: virtual TPM requires generation 2; skipped")
            return
        security = self.hv.get_security(vm.host, vm.id)
        if security["tpm_enabled"]:
            return
        if vm.running:
            logger.warning(f"VM {vm.name}: virtual TPM requested but the VM is running; not enabled")
            return
        if not security["key_protector"]:
            logger.info(f"🔐 VM {vm.name}: creating local key protector")
            self.hv.set_key_protector(vm.host, vm.id)
        logger.info(f"🔐 VM {vm.name}: enabling virtual TPM")
        self.hv.enable_tpm(vm.host, vm.id)
