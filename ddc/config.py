"""Run configuration.

Values come from, highest precedence first: command line options, an
optional JSON config file, ``DDC_`` environment variables, and defaults.
``Config.resolve`` is called once at startup; the resolved object is
passed to every component and never changes afterwards.
"""

import json
import logging
import os
import socket
import uuid
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from .models import Role, SelectionQuota
from .worker import default_threads

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "ddc.json"

QUOTA_FIELDS = {
    "slow_planning": "job_profiles_num_slow_planning",
    "slow_exec": "job_profiles_num_slow_exec",
    "high_cost": "job_profiles_num_high_query_cost",
    "recent_errors": "job_profiles_num_recent_errors",
}


def default_node_name() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return f"unknown-{uuid.uuid4()}"


class Config(BaseSettings):
    """Everything a collection run needs to know."""

    accept_collection_consent: bool = False
    verbose: int = 0
    number_threads: int = Field(default=0, ge=0)

    # REST
    dremio_endpoint: str = "http://localhost:9047"
    dremio_username: str = ""
    dremio_pat_token: SecretStr = SecretStr("")
    rest_timeout_seconds: float = Field(default=5.0, gt=0)
    rest_poll_interval_seconds: float = Field(default=0.1, gt=0)
    rest_max_polls: int = Field(default=3000, ge=1)
    system_table_row_limit: int = Field(default=100000, ge=1)

    # locations
    dremio_log_dir: str = "/var/log/dremio"
    dremio_conf_dir: str = "/opt/dremio/conf"
    dremio_gclogs_dir: str = ""
    dremio_gc_file_pattern: str = "gc*.log"
    dremio_rocksdb_dir: str = "/opt/dremio/data/db"
    tmp_output_dir: str = ""
    node_name: str = Field(default_factory=default_node_name)
    node_role: Role = Role.COORDINATOR

    # job profiles
    number_job_profiles: int = Field(default=25000, ge=0)
    job_profiles_num_slow_planning: Optional[int] = Field(default=None, ge=0)
    job_profiles_num_slow_exec: Optional[int] = Field(default=None, ge=0)
    job_profiles_num_high_query_cost: Optional[int] = Field(default=None, ge=0)
    job_profiles_num_recent_errors: Optional[int] = Field(default=None, ge=0)

    # log windows and capture durations
    dremio_logs_num_days: int = Field(default=7, ge=0)
    dremio_queries_json_num_days: int = Field(default=28, ge=0)
    dremio_jfr_time_seconds: int = Field(default=60, ge=1)
    dremio_jstack_time_seconds: int = Field(default=60, ge=1)
    dremio_jstack_freq_seconds: int = Field(default=1, ge=1)
    metrics_time_seconds: int = Field(default=60, ge=1)

    # categories
    collect_metrics: bool = True
    collect_disk_usage: bool = True
    collect_os_info: bool = True
    collect_dremio_configuration: bool = True
    collect_jvm_flags: bool = True
    collect_jfr: bool = True
    collect_jstack: bool = True
    capture_heap_dump: bool = False
    collect_queries_json: bool = True
    collect_server_logs: bool = True
    collect_gc_logs: bool = True
    collect_meta_refresh_log: bool = True
    collect_reflection_log: bool = True
    collect_acceleration_log: bool = False
    collect_access_log: bool = False
    collect_kvstore_report: bool = True
    collect_wlm: bool = True
    collect_system_tables_export: bool = True

    # remote collection
    ssh_key: str = ""
    ssh_user: str = ""
    sudo_user: str = ""
    coordinator: str = ""
    executors: str = ""
    remote_ddc_command: str = "ddc"
    remote_tmp_dir: str = "/tmp"

    model_config = SettingsConfigDict(env_prefix="DDC_", frozen=True)

    @classmethod
    def load(cls, config_file: Optional[str] = None, **overrides: Any) -> "Config":
        """Build a config from an optional JSON file plus explicit overrides.

        Overrides whose value is None are ignored so unset CLI options do
        not mask the file, the environment or the defaults.
        """
        values: Dict[str, Any] = {}
        path = Path(config_file or DEFAULT_CONFIG_FILE)
        if path.exists():
            with open(path, "r") as f:
                values.update(json.load(f))
            logger.info("found config file %s", path)
        elif config_file:
            raise FileNotFoundError(f"config file {config_file} not found")
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def token(self) -> str:
        return self.dremio_pat_token.get_secret_value()

    @property
    def quota(self) -> SelectionQuota:
        return SelectionQuota(**{name: getattr(self, field) or 0 for name, field in QUOTA_FIELDS.items()})

    @property
    def rest_enabled(self) -> bool:
        return bool(self.token)

    def resolve(self, cpus: Optional[int] = None) -> "Config":
        """Fill in derived values and switch off what cannot run.

        Without a token every REST backed category and the job profile
        quota are zeroed here, before anything is collected.
        """
        update: Dict[str, Any] = {}
        if self.number_threads == 0:
            update["number_threads"] = default_threads(cpus if cpus is not None else os.cpu_count())

        if not self.rest_enabled:
            logger.warning(
                "disabling all Workload Manager, System Table, KV Store, and Job Profile collection "
                "since the dremio-pat-token is not set"
            )
            update.update(
                collect_wlm=False,
                collect_system_tables_export=False,
                collect_kvstore_report=False,
                number_job_profiles=0,
            )
            update.update({field: 0 for field in QUOTA_FIELDS.values()})
            return self.model_copy(update=update)

        overrides = {name: getattr(self, field) for name, field in QUOTA_FIELDS.items()}
        defaults = SelectionQuota.from_total(self.number_job_profiles)
        quota = SelectionQuota.from_total(self.number_job_profiles, overrides)
        for name, field in QUOTA_FIELDS.items():
            if overrides[name] is not None and overrides[name] != getattr(defaults, name):
                logger.warning("%s changed to %d by configuration", field.replace("_", "-"), overrides[name])
            update[field] = getattr(quota, name)
        if quota.total != self.number_job_profiles:
            logger.warning("due to configuration parameters new total job profiles collected has been adjusted to %d", quota.total)
        update["number_job_profiles"] = quota.total

        if quota.total > 0 and not self.collect_queries_json:
            logger.warning(
                "NOT skipping collection of queries.json, because number-job-profiles is greater than 0 "
                "and job profile download requires queries.json"
            )
            update["collect_queries_json"] = True
        return self.model_copy(update=update)

    def redacted_dump(self) -> Dict[str, Any]:
        """Settings safe to log."""
        data = self.model_dump()
        data["dremio_pat_token"] = "REDACTED" if self.token else ""
        data["node_role"] = self.node_role.value
        return data
