"""CLI interface for ddc."""

import click
import json
import logging
import os
import sys
from typing import Optional
from pydantic import ValidationError
from .collectors import NodeCollectors, SYSTEM_TABLES
from .config import Config
from .errors import ArchiveError, SetupError
from .fs import RealFileSystem
from .logs import LOG_FILE, close_logging, setup_logging
from .orchestrator import Orchestrator
from .remote import RemoteCollector
from .rest import RestClient
from .ssh import SSHActions
from .strategy import CopyStrategy

logger = logging.getLogger(__name__)


CONSENT_INTRO = """
    Data Collection Consent Form

    We request your consent to collect certain data files from your cluster
    for the purposes of diagnostics. The files will only be used to
    troubleshoot the issues you are experiencing.

    We would like to collect the following files:

"""

CONSENT_OUTRO = """
    Please note that the files we collect may contain confidential data.
    Confidential data is minimised wherever possible.

    By running ddc with the --accept-collection-consent flag you acknowledge
    that you have read, understood, and agree to the data collection
    described above.
"""


def consent_text(config: Config) -> str:
    """The consent form listing what the given config would collect."""
    items = [
        (config.collect_metrics, "cpu, io and memory metrics"),
        (config.collect_disk_usage, "df -h output"),
        (config.collect_os_info, "operating system release, kernel, memory and cpu information"),
        (config.collect_dremio_configuration, "dremio-env, dremio.conf, logback.xml, and logback-access.xml"),
        (config.collect_system_tables_export, "the following system tables: " + ",".join(t.replace('"', "") for t in SYSTEM_TABLES)),
        (config.collect_kvstore_report, "usage statistics on the internal Key Value Store (KVStore)"),
        (config.collect_server_logs, "server.log including any archived versions, and server.out"),
        (config.collect_queries_json, "queries.json including archived versions"),
        (config.collect_meta_refresh_log, "metadata_refresh.log including any archived versions"),
        (config.collect_reflection_log, "reflection.log including archived versions"),
        (config.collect_acceleration_log, "acceleration.log including archived versions"),
        (config.number_job_profiles > 0, f"{config.number_job_profiles} job profiles"),
        (config.collect_access_log, "access.log including archived versions"),
        (config.collect_gc_logs, "all gc.log files produced by dremio"),
        (config.collect_wlm, "Work Load Manager queue names and rule names"),
        (config.capture_heap_dump, "a Java heap dump which contains a copy of all data in the JVM heap"),
        (config.collect_jstack, "Java thread dumps collected via jstack"),
        (config.collect_jfr, "Java Flight Recorder diagnostic information"),
        (config.collect_jvm_flags, "JVM flags"),
    ]
    lines = "".join(f"\t* {text}\n" for enabled, text in items if enabled)
    return CONSENT_INTRO + lines + CONSENT_OUTRO


def _load_config(config_file: Optional[str], **overrides) -> Config:
    try:
        return Config.load(config_file, **overrides).resolve()
    except (ValidationError, ValueError, FileNotFoundError) as e:
        click.echo(f"✗ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _prepare_strategy(config: Config) -> CopyStrategy:
    """Output layout under tmp_output_dir, or a fresh temp dir.

    Raises:
        SetupError: the output directory could not be created
    """
    fs = RealFileSystem()
    try:
        if config.tmp_output_dir:
            fs.mkdir_all(config.tmp_output_dir)
        return CopyStrategy(fs, tmp_dir=config.tmp_output_dir or None)
    except OSError as e:
        raise SetupError(f"unable to create output directory {config.tmp_output_dir or '(temp)'}: {e}") from e


@click.group()
def cli():
    """ddc - Diagnostic collector for data processing clusters"""
    pass


@cli.command("local-collect")
@click.option("--config", "config_file", default=None, help="JSON configuration file")
@click.option("--accept-collection-consent", is_flag=True, default=None, help="Consent to the collection of files")
@click.option("-v", "--verbose", count=True, help="Logging verbosity (-vvv for debug)")
@click.option("-t", "--number-threads", type=int, default=None, help="Control concurrency in the system")
@click.option("--dremio-endpoint", default=None, help="REST API endpoint")
@click.option("--dremio-username", default=None, help="REST API username")
@click.option("--dremio-pat-token", default=None, help="Personal Access Token (PAT)")
@click.option("--dremio-log-dir", default=None, help="Directory with application logs")
@click.option("--dremio-conf-dir", default=None, help="Directory with application configuration")
@click.option("--dremio-gclogs-dir", default=None, help="GC log directory, read from -Xloggc when unset")
@click.option("--dremio-rocksdb-dir", default=None, help="Path to the RocksDB directory")
@click.option("--tmp-output-dir", default=None, help="Where to stage output and write the archive")
@click.option("--node-name", default=None, help="Name of this node in the archive")
@click.option("--node-role", type=click.Choice(["coordinator", "executor"]), default=None, help="Role of this node")
@click.option("--number-job-profiles", type=int, default=None, help="Job profiles to download, requires a PAT")
@click.option("--capture-heap-dump/--no-capture-heap-dump", default=None, help="Run the heap dump collector")
@click.option("--collect-acceleration-log/--no-collect-acceleration-log", default=None, help="Collect acceleration.log")
@click.option("--collect-access-log/--no-collect-access-log", default=None, help="Collect access.log")
@click.option("--collect-dremio-configuration/--no-collect-dremio-configuration", default=None,
              help="Collect configuration files")
def local_collect(config_file: Optional[str], verbose: int, **options):
    """Collect diagnostics from this node and archive them.

    Example:
        ddc local-collect --accept-collection-consent --dremio-pat-token $PAT
    """
    setup_logging(verbose, log_file=None)
    config = _load_config(config_file, verbose=verbose, **options)

    if not config.accept_collection_consent:
        click.echo(consent_text(config))
        sys.exit(1)

    try:
        strategy = _prepare_strategy(config)
    except SetupError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    log_file = os.path.join(strategy.tmp_dir, LOG_FILE)
    setup_logging(verbose, log_file=log_file)
    logger.info("Current configuration: %s", json.dumps(config.redacted_dump(), default=str))

    client = None
    if config.rest_enabled:
        client = RestClient(
            config.dremio_endpoint,
            config.token,
            timeout=config.rest_timeout_seconds,
            poll_interval=config.rest_poll_interval_seconds,
            max_polls=config.rest_max_polls,
        )
    orchestrator = Orchestrator(config, strategy, NodeCollectors(config, strategy, client=client))
    try:
        tarball = orchestrator.run(log_file)
    except ArchiveError as e:
        logger.error("unable to compress archive exiting due to error %s", e)
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    finally:
        if client is not None:
            client.close()
        close_logging()
    click.echo(f"✓ Archive {tarball} complete")


@cli.command("remote-collect")
@click.option("--config", "config_file", default=None, help="JSON configuration file, also copied to every host")
@click.option("--accept-collection-consent", is_flag=True, default=None, help="Consent to the collection of files")
@click.option("-v", "--verbose", count=True, help="Logging verbosity (-vvv for debug)")
@click.option("-t", "--number-threads", type=int, default=None, help="Hosts to collect from in parallel")
@click.option("-c", "--coordinator", default=None, help="Comma separated coordinator hosts")
@click.option("-e", "--executors", default=None, help="Comma separated executor hosts")
@click.option("--ssh-key", default=None, help="Private key for ssh")
@click.option("-u", "--ssh-user", default=None, help="User to log in as")
@click.option("--sudo-user", default=None, help="Run remote commands as this user via sudo")
@click.option("--dremio-pat-token", default=None, help="Personal Access Token (PAT), passed to every host")
@click.option("--remote-ddc-command", default=None, help="ddc executable on the remote hosts")
@click.option("-o", "--output-file", default="diag.tar.gz", show_default=True, help="Archive to write")
def remote_collect(config_file: Optional[str], verbose: int, output_file: str, **options):
    """Collect diagnostics from every node over ssh.

    Example:
        ddc remote-collect -c 192.168.1.10 -e 192.168.1.14,192.168.1.15 --accept-collection-consent
    """
    setup_logging(verbose, log_file=LOG_FILE)
    config = _load_config(config_file, verbose=verbose, **options)

    if not config.accept_collection_consent:
        click.echo(consent_text(config))
        sys.exit(1)

    transport = SSHActions(
        ssh_key=config.ssh_key,
        ssh_user=config.ssh_user,
        sudo_user=config.sudo_user,
        coordinator_str=config.coordinator,
        executor_str=config.executors,
    )
    strategy = CopyStrategy(RealFileSystem())
    collector = RemoteCollector(config, transport, strategy, config_file=config_file)
    try:
        collector.run(output_file)
    except (SetupError, ArchiveError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    finally:
        close_logging()
    click.echo(f"✓ Archive {output_file} complete")


if __name__ == "__main__":
    cli()
