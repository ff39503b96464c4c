"""Remote execution over the ssh and scp binaries.

Assumes public key authentication is already set up; passwords are not
supported. Host key prompts are disabled so a collection never blocks
waiting for input.
"""

import logging
import uuid
from typing import List, Optional
from .errors import CommandError
from .models import Host, Role
from .shell import Cli, OutputHandler

logger = logging.getLogger(__name__)

SSH_OPTIONS = ["-o", "UserKnownHostsFile=/dev/null", "-o", "StrictHostKeyChecking=no"]
STAGING_DIR = "/tmp"


def clean_out(out: str) -> str:
    """Drop the banner line ssh prints on every connection.

    Exactly the first line goes; everything after it is returned unchanged.
    """
    _, sep, rest = out.partition("\n")
    return rest if sep else ""


def find_hosts(search_term: str) -> List[str]:
    """Split a comma separated host list, dropping blanks and keeping order."""
    hosts = []
    for raw in search_term.split(","):
        host = raw.strip()
        if host:
            hosts.append(host)
    return hosts


class SSHActions:
    """Runs commands and copies files on cluster nodes."""

    def __init__(
        self,
        cli: Optional[Cli] = None,
        ssh_key: str = "",
        ssh_user: str = "",
        sudo_user: str = "",
        coordinator_str: str = "",
        executor_str: str = "",
    ):
        self.cli = cli or Cli()
        self.ssh_key = ssh_key
        self.ssh_user = ssh_user
        self.sudo_user = sudo_user
        self.coordinator_str = coordinator_str
        self.executor_str = executor_str

    def name(self) -> str:
        return "SSH/SCP"

    def help_text(self) -> str:
        return (
            "no hosts found, did you specify a comma separated list of hosts? "
            "Something like: ddc remote-collect --coordinator 192.168.1.10 --executors 192.168.1.14,192.168.1.15"
        )

    def _base_args(self, binary: str) -> List[str]:
        args = [binary]
        if self.ssh_key:
            args += ["-i", self.ssh_key]
        return args + SSH_OPTIONS

    def _remote(self, host: str, path: str = "") -> str:
        target = f"{self.ssh_user}@{host}" if self.ssh_user else host
        return f"{target}:{path}" if path else target

    def _add_sudo(self, args: List[str]) -> List[str]:
        if not self.sudo_user:
            return args
        return args + ["sudo", "-u", self.sudo_user]

    def host_execute_and_stream(self, mask: bool, host: str, output: OutputHandler, secret: str, *args: str) -> None:
        """Run a command on ``host`` streaming each output line to ``output``."""
        ssh_args = self._base_args("ssh") + [self._remote(host)]
        ssh_args = self._add_sudo(ssh_args)
        ssh_args.append(" ".join(args))
        self.cli.execute_and_stream_output(mask, output, secret, *ssh_args)

    def host_execute(self, mask: bool, host: str, *args: str) -> str:
        """Run a command on ``host`` and return its output without the ssh banner."""
        lines: List[str] = []
        self.host_execute_and_stream(mask, host, lines.append, "", *args)
        return clean_out("".join(lines))

    def copy_from_host(self, host: str, source: str, destination: str) -> str:
        """Copy ``source`` on ``host`` to the local ``destination``."""
        if not self.sudo_user:
            return self.cli.execute(False, *self._base_args("scp"), self._remote(host, source), destination)
        staged = self._staged_path()
        out = self.host_execute(False, host, "cp", source, staged)
        try:
            return out + self.cli.execute(False, *self._base_args("scp"), self._remote(host, staged), destination)
        finally:
            self._remove_staged(host, staged)

    def copy_to_host(self, host: str, source: str, destination: str) -> str:
        """Copy the local ``source`` to ``destination`` on ``host``.

        With a sudo user the file is uploaded to a staging path in /tmp and
        then copied into place as that user.
        """
        if not self.sudo_user:
            return self.cli.execute(False, *self._base_args("scp"), source, self._remote(host, destination))
        staged = self._staged_path()
        self.cli.execute(False, *self._base_args("scp"), source, self._remote(host, staged))
        try:
            return self.host_execute(False, host, "cp", staged, destination)
        finally:
            self._remove_staged(host, staged)

    def _staged_path(self) -> str:
        return f"{STAGING_DIR}/ddc_transfer_{uuid.uuid4().hex}"

    def _remove_staged(self, host: str, staged: str) -> None:
        try:
            self.host_execute(False, host, "rm", staged)
        except CommandError as e:
            logger.warning("failed to remove file %s on node %s: %s", staged, host, e)

    def get_coordinators(self) -> List[str]:
        return find_hosts(self.coordinator_str)

    def get_executors(self) -> List[str]:
        return find_hosts(self.executor_str)

    def discover_hosts(self, role: Role) -> List[Host]:
        """Hosts configured for ``role`` in the order given."""
        addresses = self.get_coordinators() if role == Role.COORDINATOR else self.get_executors()
        return [Host(address=address, role=role) for address in addresses]
