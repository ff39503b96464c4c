"""Collection jobs for a single node.

Each ``collect_*`` method is one job for the worker pool. Jobs raise on
failure; partial problems inside a job (one missing config file, one
command that is not installed) are logged as warnings and the job carries
on.
"""

import fnmatch
import json
import logging
import os
import posixpath
import shutil
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence
import psutil
from .config import Config
from .errors import CollectionError, CommandError
from .fs import FileSystem
from .models import Role
from .rest import RestClient
from .shell import Cli, shell
from .strategy import CopyStrategy

logger = logging.getLogger(__name__)

SYSTEM_TABLES = [
    '"tables"',
    "boot",
    "fragments",
    "jobs",
    "materializations",
    "membership",
    "memory",
    "nodes",
    "options",
    "privileges",
    "reflection_dependencies",
    "reflections",
    "refreshes",
    "roles",
    "services",
    "slicing_threads",
    "table_statistics",
    "threads",
    "version",
    "views",
    "cache.datasets",
    "cache.mount_points",
    "cache.objects",
    "cache.storage_plugins",
]

OS_INFO_COMMANDS = [
    "cat /etc/*-release",
    "uname -r",
    "lsb_release -a",
    "hostnamectl",
    "cat /proc/meminfo",
    "lscpu",
]

CONFIG_FILES = [
    ("dremio.conf", "dremio.conf"),
    ("dremio-env", "dremio.env"),
    ("logback.xml", "logback.xml"),
    ("logback-access.xml", "logback-access.xml"),
]

METRICS_HEADER = (
    "Time\t\tUser %\t\tSystem %\t\tIdle %\t\tNice %\t\tIOwait %\t\tIRQ %\t\tSoftIRQ %\t\tSteal %\t\t"
    "Guest %\t\tGuest Nice %\t\tDisk Read (KB/s)\tDisk Write (KB/s)\tFree Mem (MB)\tCached Mem (MB)\n"
)
CPU_FIELDS = ["user", "system", "idle", "nice", "iowait", "irq", "softirq", "steal", "guest", "guest_nice"]


def parse_gc_log_from_flags(startup_flags: str) -> str:
    """Directory of the last ``-Xloggc:`` flag in a java command line.

    Returns an empty string when the flag is absent.
    """
    found = [token for token in startup_flags.split() if token.startswith("-Xloggc:")]
    if not found:
        return ""
    parts = found[-1].split("-Xloggc:")
    if len(parts) != 2:
        raise ValueError(f"unexpected items in '{found[-1]}', expected 2 but found {len(parts)}")
    return posixpath.dirname(parts[1])


class NodeCollectors:
    """The collection jobs for the node described by ``config``."""

    def __init__(
        self,
        config: Config,
        strategy: CopyStrategy,
        cli: Optional[Cli] = None,
        client: Optional[RestClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.strategy = strategy
        self.cli = cli or Cli()
        self.client = client
        self.sleep = sleep

    @property
    def fs(self) -> FileSystem:
        return self.strategy.fs

    @property
    def node(self) -> str:
        return self.config.node_name

    def out_dir(self, kind: str) -> str:
        return self.strategy.create_path(kind, self.node, self.config.node_role.value)

    @property
    def queries_dir(self) -> str:
        return self.out_dir("queries")

    def _record(self, path: str) -> None:
        self.strategy.record_file(path, self.fs.stat(path).size)

    def _write(self, kind: str, filename: str, data: bytes) -> str:
        path = os.path.join(self.out_dir(kind), filename)
        try:
            with self.fs.create(path) as f:
                f.write(data)
        except OSError as e:
            raise CollectionError(f"unable to create file {path} due to error {e}") from e
        self._record(path)
        return path

    def _capture(self, command: str) -> str:
        lines: List[str] = []
        shell(self.cli, lines.append, command)
        return "".join(lines)

    def _shell_to_file(self, kind: str, filename: str, commands: Sequence[str], headers: bool = False) -> str:
        """Run each command into one file; a failing command is only a warning."""
        path = os.path.join(self.out_dir(kind), filename)
        try:
            with self.fs.create(path) as f:
                for command in commands:
                    if headers:
                        f.write(f"___\n>>> {command}\n".encode())
                    try:
                        shell(self.cli, lambda line: f.write(line.encode()), command)
                    except CommandError as e:
                        logger.warning("unable to write '%s' to %s due to error %s", command, filename, e)
        except OSError as e:
            raise CollectionError(f"unable to create file {path} due to error {e}") from e
        self._record(path)
        return path

    def dremio_pid(self) -> int:
        output = self._capture("jps | grep DremioDaemon | awk '{print $1}'").strip()
        try:
            return int(output)
        except ValueError:
            raise CollectionError(f"unable to parse pid from text '{output}'") from None

    # os diagnostics

    def collect_node_metrics(self) -> None:
        logger.info("Collecting Node Metrics for %d seconds ....", self.config.metrics_time_seconds)
        path = os.path.join(self.out_dir("node-info"), "metrics.txt")
        with self.fs.create(path) as w:
            w.write(METRICS_HEADER.encode())
            psutil.cpu_times_percent(interval=None)
            prev_io = psutil.disk_io_counters()
            for i in range(self.config.metrics_time_seconds):
                if i > 0:
                    self.sleep(1)
                cpu = psutil.cpu_times_percent(interval=None)
                io = psutil.disk_io_counters()
                read_kb = write_kb = 0.0
                if io is not None and prev_io is not None:
                    read_kb = (io.read_bytes - prev_io.read_bytes) / 1024
                    write_kb = (io.write_bytes - prev_io.write_bytes) / 1024
                prev_io = io
                memory = psutil.virtual_memory()
                cells = [datetime.now().strftime("%H:%M:%S")]
                cells += ["%.2f%%" % getattr(cpu, name, 0.0) for name in CPU_FIELDS]
                cells += ["%.2f" % read_kb, "%.2f" % write_kb]
                cells += ["%.2f" % (memory.free / (1024 * 1024)), "%.2f" % (getattr(memory, "cached", 0) / (1024 * 1024))]
                w.write(("\t\t".join(cells) + "\n").encode())
        self._record(path)

    def collect_disk_usage(self) -> None:
        self._shell_to_file("node-info", "diskusage.txt", ["df -h"])
        if self.config.node_role == Role.COORDINATOR:
            self._shell_to_file("node-info", "rocksdb_disk_allocation.txt", [f"du -sh {self.config.dremio_rocksdb_dir}/*"])
        logger.info("... Collecting Disk Usage from %s COMPLETED", self.node)

    def collect_os_info(self) -> None:
        logger.info("Collecting OS Information from %s ...", self.node)
        self._shell_to_file("node-info", "os_info.txt", OS_INFO_COMMANDS, headers=True)
        logger.info("... Collecting OS Information from %s COMPLETED", self.node)

    def collect_dremio_config(self) -> None:
        logger.info("Collecting Configuration Information from %s ...", self.node)
        dest_dir = self.out_dir("configuration")
        for source, target in CONFIG_FILES:
            src = os.path.join(self.config.dremio_conf_dir, source)
            dst = os.path.join(dest_dir, target)
            try:
                self._copy(src, dst)
            except OSError as e:
                logger.warning("unable to copy %s due to error %s", source, e)
        logger.info("... Collecting Configuration Information from %s COMPLETED", self.node)

    def _copy(self, src: str, dst: str) -> None:
        with self.fs.open(src) as reader, self.fs.create(dst) as writer:
            shutil.copyfileobj(reader, writer)
        self._record(dst)

    # jvm diagnostics

    def collect_jvm_flags(self) -> None:
        pid = self.dremio_pid()
        self._shell_to_file("node-info", "jvm_settings.txt", [f"jcmd {pid} VM.flags"])

    def collect_jfr(self) -> None:
        pid = self.dremio_pid()
        seconds = self.config.dremio_jfr_time_seconds
        jfr_file = os.path.join(self.out_dir("jfr"), f"{self.node}.jfr")
        try:
            self._capture(f"jcmd {pid} VM.unlock_commercial_features")
        except CommandError as e:
            logger.warning(
                "Error trying to unlock commercial features %s. Newer versions of OpenJDK do not support "
                "VM.unlock_commercial_features, this is usually safe to ignore", e
            )
        out = self._capture(
            f'jcmd {pid} JFR.start name="DREMIO_JFR" settings=profile maxage={seconds}s '
            f"filename={jfr_file} dumponexit=true"
        )
        logger.debug("node: %s - jfr start output - %s", self.node, out)
        self.sleep(seconds)
        # the recording has to be stopped before the file is complete
        logger.info("... stopping JFR %s", self.node)
        logger.debug("node: %s - jfr dump output %s", self.node, self._capture(f'jcmd {pid} JFR.dump name="DREMIO_JFR"'))
        logger.debug("node: %s - jfr stop output %s", self.node, self._capture(f'jcmd {pid} JFR.stop name="DREMIO_JFR"'))
        self._record(jfr_file)

    def collect_jstacks(self) -> None:
        freq = self.config.dremio_jstack_freq_seconds
        iterations = self.config.dremio_jstack_time_seconds // freq
        logger.info("Running Java thread dumps every %d second(s) for a total of %d iterations ...", freq, iterations)
        pid = self.dremio_pid()
        for _ in range(iterations):
            try:
                dump = self._capture(f"jcmd {pid} Thread.print -l")
            except CommandError as e:
                logger.warning("unable to capture jstack of pid %d due to error %s", pid, e)
                dump = ""
            date = datetime.now().strftime("%Y-%m-%d_%H_%M_%S")
            path = self._write("thread-dumps", f"threadDump-{self.node}-{date}.txt", dump.encode())
            logger.info("Saved %s", path)
            self.sleep(freq)

    def collect_heap_dump(self) -> None:
        logger.info("Capturing Java Heap Dump")
        pid = self.dremio_pid()
        hprof = os.path.join(self.config.remote_tmp_dir, f"{self.node}.hprof")
        for stale in (hprof, hprof + ".gz"):
            try:
                self.fs.remove(stale)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("unable to remove %s with error %s", stale, e)
        logger.info("heap dump output %s", self._capture(f"jmap -dump:format=b,file={hprof} {pid}"))
        dest = os.path.join(self.out_dir("heap-dumps"), f"{self.node}.hprof.gz")
        try:
            self.strategy.compress_file(hprof, dest)
        except OSError as e:
            raise CollectionError(f"unable to gzip heap dump file {hprof} due to error {e}") from e
        try:
            self.fs.remove(hprof)
        except OSError as e:
            logger.warning("unable to remove old hprof file %s, must remove manually: %s", hprof, e)
        self._record(dest)

    # logs

    def _collect_logs(self, kind: str, src_dir: str, patterns: Sequence[str], num_days: int) -> None:
        """Copy files matching ``patterns`` modified in the last ``num_days`` days.

        The ``archive`` subdirectory of ``src_dir`` is searched as well.
        """
        try:
            names = self.fs.read_dir(src_dir)
        except OSError as e:
            raise CollectionError(f"unable to read log directory {src_dir} due to error {e}") from e
        candidates = [os.path.join(src_dir, name) for name in names]
        archive_dir = os.path.join(src_dir, "archive")
        if "archive" in names:
            try:
                candidates += [os.path.join(archive_dir, name) for name in self.fs.read_dir(archive_dir)]
            except OSError as e:
                logger.warning("unable to read %s due to error %s", archive_dir, e)

        cutoff = time.time() - num_days * 86400
        dest_dir = self.out_dir(kind)
        copied = 0
        for path in candidates:
            name = os.path.basename(path)
            if not any(fnmatch.fnmatch(name, pattern) for pattern in patterns):
                continue
            try:
                info = self.fs.stat(path)
                if info.is_dir or info.mtime < cutoff:
                    continue
                self._copy(path, os.path.join(dest_dir, name))
                copied += 1
            except OSError as e:
                logger.warning("unable to copy %s due to error %s", path, e)
        logger.info("copied %d %s file(s) from %s", copied, kind, src_dir)

    def collect_queries_json(self) -> None:
        self._collect_logs("queries", self.config.dremio_log_dir, ["queries.json", "queries*.json.gz"],
                           self.config.dremio_queries_json_num_days)

    def collect_server_logs(self) -> None:
        self._collect_logs("logs", self.config.dremio_log_dir, ["server.log", "server.out", "server*.log.gz"],
                           self.config.dremio_logs_num_days)

    def collect_meta_refresh_logs(self) -> None:
        self._collect_logs("logs", self.config.dremio_log_dir, ["metadata_refresh.log", "metadata_refresh*.log.gz"],
                           self.config.dremio_logs_num_days)

    def collect_reflection_logs(self) -> None:
        self._collect_logs("logs", self.config.dremio_log_dir, ["reflection.log", "reflection*.log.gz"],
                           self.config.dremio_logs_num_days)

    def collect_acceleration_logs(self) -> None:
        self._collect_logs("logs", self.config.dremio_log_dir, ["acceleration.log", "acceleration*.log.gz"],
                           self.config.dremio_logs_num_days)

    def collect_access_logs(self) -> None:
        self._collect_logs("logs", self.config.dremio_log_dir, ["access.log", "access*.log.gz"],
                           self.config.dremio_logs_num_days)

    def find_gc_log_dir(self) -> str:
        """The gc log directory, read from the running JVM when not configured."""
        if self.config.dremio_gclogs_dir:
            return self.config.dremio_gclogs_dir
        pid = self.dremio_pid()
        found = parse_gc_log_from_flags(self._capture(f"ps -f {pid}"))
        if not found:
            logger.warning("no -Xloggc flag found, looking for gc logs in %s", self.config.dremio_log_dir)
            return self.config.dremio_log_dir
        return found

    def collect_gc_logs(self) -> None:
        pattern = self.config.dremio_gc_file_pattern
        self._collect_logs("logs", self.find_gc_log_dir(), [pattern, pattern + "*"], self.config.dremio_logs_num_days)

    # rest

    def _rest(self) -> RestClient:
        if self.client is None:
            raise CollectionError("no REST client configured")
        self.client.validate_credentials()
        return self.client

    def validate_credentials(self) -> None:
        self._rest()

    def collect_kvstore_report(self) -> None:
        body = self._rest().kvstore_report()
        self._write("kvstore", "kvstore-report.zip", body)
        logger.info("SUCCESS - Created kvstore-report.zip")

    def collect_wlm(self) -> None:
        client = self._rest()
        for filename, fetch in (("queues.json", client.wlm_queues), ("rules.json", client.wlm_rules)):
            self._write("wlm", filename, fetch())
            logger.info("SUCCESS - Created %s", filename)

    def collect_system_tables(self) -> None:
        client = self._rest()
        row_limit = self.config.system_table_row_limit
        for table in SYSTEM_TABLES:
            name = table.replace('"', "")
            body = client.download_system_table(table, row_limit)
            try:
                rows = json.loads(body).get("returnedRowCount")
            except (ValueError, AttributeError) as e:
                raise CollectionError(f"unable to parse result of sys.{name}: {e}") from e
            if rows is not None and int(rows) == row_limit:
                logger.warning("Returned row count for sys.%s has been limited to %d", name, row_limit)
            self._write("system-tables", f"sys.{name}.json", body)
            logger.info("SUCCESS - Created sys.%s.json", name)

    def download_job_profile(self, job_id: str) -> None:
        if self.client is None:
            raise CollectionError("no REST client configured")
        self._write("job-profiles", f"{job_id}.zip", self.client.download_job_profile(job_id))
