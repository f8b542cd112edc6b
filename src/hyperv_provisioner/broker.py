"""
Remote execution broker.

Runs host operations in the current process when the target is the
local machine and over a pooled SSH session otherwise. Sessions are
opened lazily, reused for the life of the ExecutionContext and closed
when it exits. The context is used from a single thread; VMs are
reconciled sequentially, so the session map needs no lock.
"""

import logging
import socket
import subprocess
from typing import Any, Dict, Iterable, Optional

import paramiko

from hyperv_provisioner.config import Config
from hyperv_provisioner.exceptions import ExecutionError, SessionUnavailableError
from hyperv_provisioner.powershell import Operation, build_script, command_line, parse_output

logger = logging.getLogger(__name__)

LOCAL_ALIASES = {"", ".", "localhost", "127.0.0.1", "::1"}


class RemoteSession:
    """An open SSH connection to one host."""

    def __init__(
        self,
        host: str,
        user: str,
        key_path: Optional[str],
        port: int = 22,
        connect_timeout: int = 30,
    ) -> None:
        self.host = host
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self.client.connect(
                hostname=host,
                port=port,
                username=user,
                key_filename=key_path,
                timeout=connect_timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            raise SessionUnavailableError(f"Cannot open session to {host}: {e}", host=host)

    def run(self, command: str, timeout: Optional[int] = None) -> tuple:
        """Execute a command and return (exit_status, stdout, stderr)."""
        stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        return status, out, err

    def close(self) -> None:
        self.client.close()


class ExecutionContext:
    """Owns the session cache and dispatches operations to hosts."""

    def __init__(
        self,
        ssh_user: Optional[str] = None,
        ssh_key_path: Optional[str] = None,
        ssh_port: Optional[int] = None,
        connect_timeout: Optional[int] = None,
        command_timeout: Optional[int] = None,
        powershell: Optional[str] = None,
        local_names: Optional[Iterable[str]] = None,
    ) -> None:
        self.ssh_user = ssh_user or Config.SSH_USER
        self.ssh_key_path = ssh_key_path or Config.SSH_KEY_PATH
        self.ssh_port = ssh_port or Config.SSH_PORT
        self.connect_timeout = connect_timeout or Config.SSH_TIMEOUT
        self.command_timeout = command_timeout or Config.COMMAND_TIMEOUT
        self.powershell = powershell or Config.POWERSHELL_EXE
        self.sessions: Dict[str, RemoteSession] = {}
        if local_names is None:
            local_names = {socket.gethostname(), socket.getfqdn()}
        self.local_names = {n.casefold() for n in local_names if n}

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def is_local(self, host: Optional[str]) -> bool:
        """True when operations against host run in-process."""
        if host is None or host.casefold() in LOCAL_ALIASES:
            return True
        name = host.casefold()
        if name in self.local_names:
            return True
        # A qualified name only matches exactly; a short name matches any local FQDN
        return "." not in name and name in {n.split(".")[0] for n in self.local_names}

    def session(self, host: str) -> RemoteSession:
        """Return the cached session for host, opening it on first use."""
        key = host.casefold()
        if key not in self.sessions:
            logger.debug(f"Opening session to {host}")
            self.sessions[key] = RemoteSession(
                host,
                user=self.ssh_user,
                key_path=self.ssh_key_path,
                port=self.ssh_port,
                connect_timeout=self.connect_timeout,
            )
        return self.sessions[key]

    def invoke(self, host: Optional[str], operation: Operation, args: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run an operation on host with an explicit argument bag.

        Returns:
            The JSON-decoded pipeline output of the operation (None when empty)

        Raises:
            SessionUnavailableError: If a remote session cannot be opened
            ExecutionError: If the operation fails
        """
        target = host or "localhost"
        logger.debug(f"[{target}] {operation.name} {args or {}}")
        script = build_script(operation, args)

        if self.is_local(host):
            status, out, err = self._run_local(script, operation, target)
        else:
            command = " ".join(command_line(self.powershell, script))
            try:
                status, out, err = self.session(target).run(command, timeout=self.command_timeout)
            except (paramiko.SSHException, OSError) as e:
                raise ExecutionError(f"{operation.name} on {target} failed: {e}", host=target, operation=operation.name)

        if status != 0:
            message = err.strip() or out.strip() or f"exit status {status}"
            logger.error(f"[{target}] {operation.name} failed: {message}")
            raise ExecutionError(
                f"{operation.name} on {target} failed: {message}", host=target, operation=operation.name
            )

        try:
            return parse_output(out)
        except ValueError as e:
            raise ExecutionError(
                f"{operation.name} on {target} returned unparseable output: {e}", host=target, operation=operation.name
            )

    def _run_local(self, script: str, operation: Operation, target: str) -> tuple:
        try:
            result = subprocess.run(
                command_line(self.powershell, script),
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except FileNotFoundError:
            raise ExecutionError(f"{self.powershell} not found", host=target, operation=operation.name)
        except subprocess.TimeoutExpired:
            raise ExecutionError(f"{operation.name} timed out on {target}", host=target, operation=operation.name)
        return result.returncode, result.stdout, result.stderr

    def close(self) -> None:
        """Close every cached session."""
        for host, session in list(self.sessions.items()):
            logger.debug(f"Closing session to {host}")
            try:
                session.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Error closing session to {host}: {e}")
        self.sessions.clear()
