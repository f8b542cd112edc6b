import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from hyperv_provisioner.policy import RetryPolicy


class Config:
    """Loads and manages configuration from environment variables."""

    load_dotenv()

    # Remote execution
    SSH_USER = os.getenv("SSH_USER", "Administrator")
    SSH_KEY_PATH = os.path.expanduser(os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"))
    SSH_PORT = int(os.getenv("SSH_PORT", "22"))
    SSH_TIMEOUT = int(os.getenv("SSH_TIMEOUT", "30"))
    COMMAND_TIMEOUT = int(os.getenv("COMMAND_TIMEOUT", "900"))
    POWERSHELL_EXE = os.getenv("POWERSHELL_EXE", "powershell.exe")

    DEFAULT_VM_PATH = os.getenv("DEFAULT_VM_PATH", r"C:\ProgramData\Microsoft\Windows\Hyper-V")

    # 4 hex digits prepended to the IP octets when an adapter has ipAddress but no macPrefix
    MAC_PREFIX_DEFAULT = os.getenv("MAC_PREFIX_DEFAULT")

    # Bounded polling for SCCM collection visibility and disk merges
    RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "8"))
    RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "5"))
    RETRY_MULTIPLIER = float(os.getenv("RETRY_MULTIPLIER", "2"))
    RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "300"))

    # Firmware/system settings pushed to every VM
    BIOS_NUMLOCK = os.getenv("BIOS_NUMLOCK", "true").lower() == "true"
    LOCK_ON_DISCONNECT = os.getenv("LOCK_ON_DISCONNECT", "true").lower() == "true"
    AUTOMATIC_CHECKPOINTS = os.getenv("AUTOMATIC_CHECKPOINTS", "false").lower() == "true"

    # A boot disk bigger than this most likely already holds an installed OS
    VHD_INSTALLED_THRESHOLD_BYTES = int(os.getenv("VHD_INSTALLED_THRESHOLD_BYTES", str(12 * 1024**3)))

    # Answer-file credentials
    LOCAL_ADMIN_PASSWORD = os.getenv("LOCAL_ADMIN_PASSWORD")
    DOMAIN_JOIN_USER = os.getenv("DOMAIN_JOIN_USER")
    DOMAIN_JOIN_PASSWORD = os.getenv("DOMAIN_JOIN_PASSWORD")

    # Directory and name-resolution collaborators
    AD_SERVER = os.getenv("AD_SERVER")
    DNS_SERVER = os.getenv("DNS_SERVER")
    DNS_ZONE = os.getenv("DNS_ZONE")

    @classmethod
    def get_hosts(cls) -> List[str]:
        """Comma-separated HYPERV_HOSTS searched for VMs whose record names no host."""
        hosts = os.getenv("HYPERV_HOSTS", "")
        return [h.strip() for h in hosts.split(",") if h.strip()]

    @classmethod
    def retry_policy(cls) -> RetryPolicy:
        """Build the polling policy from environment settings."""
        return RetryPolicy(
            max_attempts=cls.RETRY_MAX_ATTEMPTS,
            base_delay=cls.RETRY_BASE_DELAY,
            multiplier=cls.RETRY_MULTIPLIER,
            max_delay=cls.RETRY_MAX_DELAY,
        )

    @classmethod
    def desired_system_settings(cls) -> dict:
        """Values compared against Msvm_VirtualSystemSettingData on every VM."""
        return {
            "BIOSNumLock": cls.BIOS_NUMLOCK,
            "LockOnDisconnect": cls.LOCK_ON_DISCONNECT,
            "AutomaticSnapshotsEnabled": cls.AUTOMATIC_CHECKPOINTS,
        }


@dataclass
class ReconcileOptions:
    """Per-run flags taken from the command line."""

    skip_provisioning: bool = False
    skip_start: bool = False
    force_restart: bool = False
    preserve_hard_drives: bool = False
    remove_network_objects: bool = False
    force: bool = False
    dns_zone: Optional[str] = None
