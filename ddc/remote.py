"""Collecting from a fleet of nodes over ssh.

Each host runs ``ddc local-collect`` itself. The resulting node archive is
copied back under ``<role>s/<host>/archive`` of the local run and the whole
tree is archived once every host has finished.
"""

import logging
import os
import posixpath
from typing import List, Optional
from .config import Config
from .errors import CommandError, PoolError, SetupError
from .models import Host, Role, redact
from .ssh import SSHActions
from .strategy import CopyStrategy
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class RemoteCollector:
    """Runs node collection on every configured host."""

    def __init__(self, config: Config, transport: SSHActions, strategy: CopyStrategy, config_file: Optional[str] = None):
        self.config = config
        self.transport = transport
        self.strategy = strategy
        self.config_file = config_file

    def hosts(self) -> List[Host]:
        """Coordinators then executors.

        Raises:
            SetupError: no hosts were configured
        """
        hosts = self.transport.discover_hosts(Role.COORDINATOR) + self.transport.discover_hosts(Role.EXECUTOR)
        if not hosts:
            raise SetupError(self.transport.help_text())
        return hosts

    def remote_dir(self) -> str:
        return posixpath.join(self.config.remote_tmp_dir, f"ddc-{self.strategy.base_dir}")

    def local_collect_args(self, host: Host, remote_dir: str, remote_conf: Optional[str]) -> List[str]:
        args = [
            self.config.remote_ddc_command, "local-collect",
            "--accept-collection-consent",
            "--node-name", host.address,
            "--node-role", host.role.value,
            "--tmp-output-dir", remote_dir + "/",
        ]
        if remote_conf:
            args += ["--config", remote_conf]
        if self.config.token:
            args += ["--dremio-pat-token", self.config.token]
        return args

    def collect_host(self, host: Host) -> None:
        address = host.address
        secret = self.config.token
        remote_dir = self.remote_dir()
        logger.info("Collecting from %s %s ...", host.role.value, address)
        self.transport.host_execute(False, address, "mkdir", "-p", remote_dir)

        remote_conf = None
        if self.config_file:
            remote_conf = posixpath.join(remote_dir, "ddc.json")
            self.transport.copy_to_host(address, self.config_file, remote_conf)

        def output(line: str) -> None:
            logger.debug("%s: %s", address, redact(line.rstrip("\n"), secret))

        self.transport.host_execute_and_stream(
            bool(secret), address, output, secret, *self.local_collect_args(host, remote_dir, remote_conf)
        )

        remote_tarball = posixpath.join(remote_dir, f"{address}.tar.gz")
        local_dir = self.strategy.create_path("archive", address, host.role.value)
        local_tarball = os.path.join(local_dir, f"{address}.tar.gz")
        try:
            self.transport.copy_from_host(address, remote_tarball, local_tarball)
            self.strategy.record_file(local_tarball, self.strategy.fs.stat(local_tarball).size)
        finally:
            try:
                self.transport.host_execute(False, address, "rm", "-rf", remote_dir)
            except CommandError as e:
                logger.warning("failed to remove %s on node %s: %s", remote_dir, address, e)
        logger.info("... Collecting from %s COMPLETED", address)

    def run(self, output_file: str) -> str:
        """Collect from every host and archive the result to ``output_file``.

        Raises:
            SetupError: no hosts were configured
            ArchiveError: the archive could not be written
        """
        hosts = self.hosts()
        logger.info("using %s to collect from %d host(s)", self.transport.name(), len(hosts))
        pool = WorkerPool(self.config.number_threads, job_queue_size=len(hosts))
        for host in hosts:
            pool.add_job(lambda host=host: self.collect_host(host), name=f"collect {host.address}")
        try:
            pool.wait()
        except PoolError as e:
            logger.error("collection failed on %d of %d host(s): %s", len(e.errors), len(hosts), e)
        self.strategy.archive("cluster", output_file)
        return output_file
