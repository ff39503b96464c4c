"""Two phase collection run for one node.

Phase one submits every enabled category to a worker pool and waits.
Phase two reads the queries.json files phase one copied, picks the job
profiles worth downloading and fetches them on a second pool. Only then is
the output archived.
"""

import logging
import os
import shutil
from typing import Callable, List, NamedTuple, Optional
from .collectors import NodeCollectors
from .config import Config
from .errors import CollectionError, PoolError
from .selector import load_records, select_records
from .strategy import CopyStrategy
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class Category(NamedTuple):
    name: str
    enabled: bool
    job: Callable[[], None]


class Orchestrator:
    """Runs the collection phases and produces the node archive."""

    def __init__(self, config: Config, strategy: CopyStrategy, collectors: NodeCollectors):
        self.config = config
        self.strategy = strategy
        self.collectors = collectors

    def categories(self) -> List[Category]:
        c = self.config
        n = self.collectors
        return [
            # slow captures first so they overlap with everything else
            Category("node metrics", c.collect_metrics, n.collect_node_metrics),
            Category("Java Flight Recorder", c.collect_jfr, n.collect_jfr),
            Category("java thread dumps", c.collect_jstack, n.collect_jstacks),
            Category("Java heap dump", c.capture_heap_dump, n.collect_heap_dump),
            Category("disk usage", c.collect_disk_usage, n.collect_disk_usage),
            Category("dremio configuration", c.collect_dremio_configuration, n.collect_dremio_config),
            Category("OS information", c.collect_os_info, n.collect_os_info),
            Category("queries.json", c.collect_queries_json, n.collect_queries_json),
            Category("server logs", c.collect_server_logs, n.collect_server_logs),
            Category("garbage collection logs", c.collect_gc_logs, n.collect_gc_logs),
            Category("metadata refresh logs", c.collect_meta_refresh_log, n.collect_meta_refresh_logs),
            Category("reflection logs", c.collect_reflection_log, n.collect_reflection_logs),
            Category("acceleration logs", c.collect_acceleration_log, n.collect_acceleration_logs),
            Category("access logs", c.collect_access_log, n.collect_access_logs),
            Category("JVM flags", c.collect_jvm_flags, n.collect_jvm_flags),
            Category("KV store report", c.collect_kvstore_report, n.collect_kvstore_report),
            Category("workload manager report", c.collect_wlm, n.collect_wlm),
            Category("system tables export", c.collect_system_tables_export, n.collect_system_tables),
        ]

    def run_breadth_phase(self) -> None:
        pool = WorkerPool(self.config.number_threads)
        for category in self.categories():
            if not category.enabled:
                logger.info("skipping collection of %s", category.name)
                continue
            pool.add_job(category.job, name=category.name)
        try:
            pool.wait()
        except PoolError as e:
            logger.error("thread pool has an error: %s", e)

    def run_depth_phase(self) -> None:
        quota = self.config.quota
        if quota.total == 0:
            logger.info("Skipping Collect of Job Profiles...")
            return
        logger.info("Collecting Job Profiles...")
        try:
            self.collectors.validate_credentials()
        except CollectionError as e:
            logger.error("skipping collection of job profiles, unable to validate REST API credentials: %s", e)
            return
        queries_dir = self.collectors.queries_dir
        fs = self.strategy.fs
        paths = [os.path.join(queries_dir, name) for name in fs.read_dir(queries_dir)]
        if not paths:
            logger.warning("no queries.json files found. This is probably an executor, so we are skipping collection of Job Profiles")
            return

        ids = select_records(load_records(fs, paths), quota)
        logger.info(
            "quota: slow planning %d, slow execution %d, high query cost %d, recent errors %d",
            quota.slow_planning, quota.slow_exec, quota.high_cost, quota.recent_errors,
        )
        if not ids:
            logger.info("no job profiles matched the selection")
            return
        logger.info("Downloading %d job profiles...", len(ids))
        pool = WorkerPool(self.config.number_threads, job_queue_size=len(ids))
        for job_id in ids:
            pool.add_job(lambda job_id=job_id: self.collectors.download_job_profile(job_id), name=f"job profile {job_id}")
        try:
            pool.wait()
        except PoolError as e:
            logger.error("job profile download thread pool wait error: %d of %d downloads failed", len(e.errors), len(ids))
        logger.info("Finished downloading %d job profiles", len(ids))

    def collect(self) -> None:
        self.run_breadth_phase()
        try:
            self.run_depth_phase()
        except Exception as e:
            logger.error("during job profile collection there was an error: %s", e)

    def archive_path(self) -> str:
        return f"{self.strategy.tmp_dir}{self.config.node_name}.tar.gz"

    def archive(self, log_file: Optional[str] = None) -> str:
        """Archive the output tree, including ``log_file`` when given.

        Raises:
            ArchiveError: the archive could not be written
        """
        if log_file and os.path.exists(log_file):
            fs = self.strategy.fs
            dest = os.path.join(self.strategy.output_dir, f"ddc-{self.config.node_name}.log")
            try:
                fs.mkdir_all(self.strategy.output_dir)
                with open(log_file, "rb") as src, fs.create(dest) as dst:
                    shutil.copyfileobj(src, dst)
            except OSError as e:
                logger.warning("unable to copy log to archive due to error %s", e)
        tarball = self.archive_path()
        logger.info("collection complete. Archiving %s to %s...", self.strategy.output_dir, tarball)
        self.strategy.archive(self.config.node_name, tarball)
        logger.info("Archive %s complete", tarball)
        return tarball

    def run(self, log_file: Optional[str] = None) -> str:
        logger.info("Starting collection...")
        self.collect()
        return self.archive(log_file)
