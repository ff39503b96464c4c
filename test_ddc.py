"""Test suite for ddc - Diagnostic Collector."""

import gzip
import io
import json
import logging
import os
import sys
import tarfile
import threading
import time
from collections import Counter
from datetime import datetime
from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner
from pydantic import ValidationError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from ddc.cli import cli, consent_text
from ddc.collectors import NodeCollectors, parse_gc_log_from_flags
from ddc.config import Config
from ddc.errors import (
    ArchiveError,
    CollectionError,
    CommandError,
    JobPollTimeoutError,
    PoolError,
    RemoteJobFailedError,
    RestError,
    SetupError,
    UnknownJobStateError,
)
from ddc.fs import FakeFileSystem, RealFileSystem
from ddc.models import DiagnosticRecord, Host, Role, SelectionQuota
from ddc.orchestrator import Orchestrator
from ddc.remote import RemoteCollector
from ddc.rest import RestClient
from ddc.selector import load_records, recent_errors, select_records, slow_exec
from ddc.shell import Cli
from ddc.ssh import SSHActions, clean_out, find_hosts
from ddc.strategy import CopyStrategy, tar_gz_dir
from ddc.worker import WorkerPool, default_threads


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    root = logging.getLogger("ddc")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


class FakeCli(Cli):
    """Records every command instead of running it.

    ``respond`` maps an argument list to output lines, or raises.
    """

    def __init__(self, respond=None):
        self.calls = []
        self.masks = []
        self.respond = respond or (lambda args: ["Warning: Permanently added host\n", "ok\n"])

    def execute_and_stream_output(self, mask, output, secret, *args):
        self.calls.append(list(args))
        self.masks.append(mask)
        for line in self.respond(list(args)):
            output(line)


def tar_names(data: bytes):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return tar.getnames()


def record(id, planning=0, exec_time=0, cost=0, error=False, start=0):
    return DiagnosticRecord(
        id=id, planning_time=planning, execution_time=exec_time, query_cost=cost, is_error=error, start=start
    )


class TestWorkerPool:
    """Bounded worker pool."""

    def test_pool_never_exceeds_concurrency(self):
        """Test: No more than N jobs run at once and every job runs exactly once."""
        lock = threading.Lock()
        running = 0
        peak = 0
        runs = Counter()

        def make(i):
            def job():
                nonlocal running, peak
                with lock:
                    running += 1
                    peak = max(peak, running)
                time.sleep(0.01)
                with lock:
                    running -= 1
                    runs[i] += 1
            return job

        pool = WorkerPool(3)
        for i in range(20):
            pool.add_job(make(i), name=f"job{i}")
        pool.wait()

        assert peak <= 3
        assert len(runs) == 20
        assert all(count == 1 for count in runs.values())

    def test_pool_failure_does_not_stop_siblings(self):
        """Test: One failing job is reported after the others finish."""
        done = []
        lock = threading.Lock()

        def ok(i):
            def job():
                time.sleep(0.005)
                with lock:
                    done.append(i)
            return job

        def boom():
            raise RuntimeError("disk on fire")

        pool = WorkerPool(2)
        for i in range(5):
            pool.add_job(ok(i))
        pool.add_job(boom, name="boom")
        for i in range(5, 10):
            pool.add_job(ok(i))

        with pytest.raises(PoolError) as exc:
            pool.wait()

        assert sorted(done) == list(range(10))
        assert len(exc.value.errors) == 1
        assert exc.value.errors[0].name == "boom"
        assert "disk on fire" in str(exc.value)

    def test_pool_wait_without_failures(self):
        """Test: wait returns quietly when every job succeeds."""
        pool = WorkerPool(2, job_queue_size=4)
        results = []
        for i in range(4):
            pool.add_job(lambda i=i: results.append(i))
        assert pool.wait() is None
        assert sorted(results) == [0, 1, 2, 3]
        assert pool.errors == []

    def test_pool_rejects_jobs_after_wait(self):
        """Test: A finished pool does not accept more work."""
        pool = WorkerPool(1)
        pool.wait()
        with pytest.raises(RuntimeError):
            pool.add_job(lambda: None)

    def test_default_threads(self):
        """Test: Half the CPUs with a floor of two."""
        assert default_threads(16) == 8
        assert default_threads(5) == 2
        assert default_threads(2) == 2
        assert default_threads(None) == 2


class TestSelection:
    """Quota split and job profile selection."""

    def test_quota_split_sums_to_total(self):
        """Test: The default split uses every requested profile."""
        quota = SelectionQuota.from_total(25000)
        assert quota.total == 25000
        assert quota.slow_exec == 10000
        assert quota.slow_planning == quota.high_cost == quota.recent_errors == 5000

    def test_quota_remainder_goes_to_slow_exec(self):
        """Test: Rounding leftovers land in slow-exec."""
        quota = SelectionQuota.from_total(7)
        assert (quota.slow_planning, quota.high_cost, quota.recent_errors) == (1, 1, 1)
        assert quota.slow_exec == 4
        assert quota.total == 7

    def test_quota_small_total_is_all_slow_exec(self):
        """Test: Fewer than four profiles are not split."""
        quota = SelectionQuota.from_total(3)
        assert quota == SelectionQuota(slow_exec=3)
        assert SelectionQuota.from_total(0).total == 0

    def test_quota_overrides_take_precedence(self):
        """Test: A per-category override replaces the computed share."""
        quota = SelectionQuota.from_total(10, {"high_cost": 5, "slow_planning": None})
        assert quota.high_cost == 5
        assert quota.slow_planning == 2
        assert quota.total == 13
        with pytest.raises(ValueError):
            SelectionQuota.from_total(10, {"bogus": 1})

    def test_selection_deduplicates_across_buckets(self):
        """Test: A record picked by two buckets is fetched once."""
        records = [
            record("a", exec_time=100, cost=100),
            record("b", exec_time=50, cost=10),
            record("c", exec_time=10, cost=5, error=True, start=1000),
            record("d", exec_time=5, cost=1, error=True, start=500),
        ]
        quota = SelectionQuota(slow_exec=2, high_cost=1, recent_errors=1, slow_planning=0)
        selected = select_records(records, quota)
        assert selected == ["a", "b", "c"]

    def test_selection_ties_break_by_id(self):
        """Test: Equal values are ordered by ascending id."""
        records = [record("b", exec_time=10), record("a", exec_time=10), record("c", exec_time=1)]
        assert [r.id for r in slow_exec(records, 2)] == ["a", "b"]

    def test_recent_errors_only_picks_failures(self):
        """Test: The error bucket takes the newest failed records."""
        records = [
            record("old", error=True, start=1),
            record("ok", error=False, start=99),
            record("new", error=True, start=50),
        ]
        assert [r.id for r in recent_errors(records, 5)] == ["new", "old"]

    def test_load_records_skips_bad_lines(self):
        """Test: queries.json parsing tolerates junk and reads gz archives."""
        fs = FakeFileSystem()
        lines = [
            json.dumps({"queryId": "q1", "planningTime": 5, "runningTime": 20, "queryCost": 3.5, "outcome": "COMPLETED", "start": 10}),
            "not json",
            "",
            json.dumps({"queryText": "no id"}),
            json.dumps({"queryId": "q2", "outcome": "FAILED", "start": 20}),
        ]
        fs.write_file("/q/queries.json", "\n".join(lines).encode())
        fs.write_file("/q/queries.2023-01-01.json.gz", gzip.compress(json.dumps({"queryId": "q3"}).encode()))

        records = load_records(fs, ["/q/queries.json", "/q/queries.2023-01-01.json.gz"])

        assert [r.id for r in records] == ["q1", "q2", "q3"]
        assert records[0].execution_time == 20
        assert records[0].query_cost == 3.5
        assert records[1].is_error

    def test_load_records_skips_unreadable_files(self, caplog):
        """Test: A truncated or missing file is skipped and the rest still load."""
        fs = FakeFileSystem()
        rotated = gzip.compress("\n".join(json.dumps({"queryId": f"r{i}"}) for i in range(50)).encode())
        fs.write_file("/q/queries.2023-01-01.json.gz", rotated[:len(rotated) // 2])
        fs.write_file("/q/queries.json", json.dumps({"queryId": "q1"}).encode())
        caplog.set_level(logging.WARNING, logger="ddc")

        records = load_records(fs, ["/q/queries.2023-01-01.json.gz", "/q/gone.json", "/q/queries.json"])

        assert [r.id for r in records] == ["q1"]
        assert "queries.2023-01-01.json.gz" in caplog.text
        assert "gone.json" in caplog.text


class TestCopyStrategy:
    """Output layout and archives."""

    def test_strategy_base_and_tmp_dir(self):
        """Test: The base directory is timestamped and the tmp dir comes from the fs."""
        strategy = CopyStrategy(FakeFileSystem(), now=datetime(2023, 1, 2, 3, 4, 5))
        assert strategy.base_dir == "20230102-030405-DDC"
        assert strategy.tmp_dir == os.path.join("tmp", "dir1", "random")

    def test_create_path_partitions_by_role(self):
        """Test: Coordinator and executor paths for the same node never collide."""
        fs = FakeFileSystem()
        strategy = CopyStrategy(fs)
        coordinator = strategy.create_path("log", "node1", "coordinator")
        executor = strategy.create_path("log", "node1", "executors")

        base = os.path.join("tmp", "dir1", "random", strategy.base_dir)
        assert coordinator == os.path.join(base, "coordinators", "node1", "log")
        assert executor == os.path.join(base, "executors", "node1", "log")
        assert coordinator in fs.dirs and executor in fs.dirs
        with pytest.raises(ValueError):
            strategy.create_path("log", "node1", "gateway")

    def test_record_file_is_thread_safe(self):
        """Test: Concurrent workers can all record files."""
        strategy = CopyStrategy(FakeFileSystem())

        def add(n):
            for i in range(50):
                strategy.record_file(f"/out/{n}/{i}", i)

        threads = [threading.Thread(target=add, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(strategy.collected_files) == 400

    def test_tar_gz_dir_keeps_relative_paths(self, tmp_path):
        """Test: Archiving reproduces ./testdata/test.txt with the same size."""
        src = tmp_path / "src"
        (src / "testdata").mkdir(parents=True)
        (src / "empty").mkdir()
        content = b"this is a test file\n" * 10
        (src / "testdata" / "test.txt").write_bytes(content)
        dest = tmp_path / "out.tar.gz"

        tar_gz_dir(RealFileSystem(), str(src), str(dest))

        with tarfile.open(dest, "r:gz") as tar:
            member = tar.getmember("./testdata/test.txt")
            assert member.size == len(content)
            assert tar.extractfile(member).read() == content
            assert tar.getmember("./empty").isdir()
            assert all(name == "." or name.startswith("./") for name in tar.getnames())

    def test_strategy_archive_on_fake_fs(self):
        """Test: The whole output tree is archived from the in-memory fs."""
        fs = FakeFileSystem()
        strategy = CopyStrategy(fs)
        log_dir = strategy.create_path("logs", "node1", "coordinator")
        strategy.create_path("jfr", "node2", "executor")
        with fs.create(os.path.join(log_dir, "server.log")) as f:
            f.write(b"started\n")
        dest = strategy.tmp_dir + "node1.tar.gz"

        strategy.archive("node1", dest)

        names = tar_names(fs.files[os.path.normpath(dest)])
        assert "./coordinators/node1/logs/server.log" in names
        assert "./executors/node2/jfr" in names

    def test_strategy_archive_selected_files(self):
        """Test: Passing files archives only those files."""
        fs = FakeFileSystem()
        strategy = CopyStrategy(fs)
        log_dir = strategy.create_path("logs", "node1", "coordinator")
        for name in ("a.log", "b.log"):
            with fs.create(os.path.join(log_dir, name)) as f:
                f.write(name.encode())
        strategy.record_file(os.path.join(log_dir, "a.log"), 5)

        strategy.archive("partial", "tmp/partial.tar.gz", strategy.collected_files)

        assert tar_names(fs.files["tmp/partial.tar.gz"]) == ["./coordinators/node1/logs/a.log"]

    def test_strategy_archive_failure_is_archive_error(self):
        """Test: An archive that cannot be written raises ArchiveError."""
        strategy = CopyStrategy(FakeFileSystem())
        with pytest.raises(ArchiveError):
            strategy.archive("node1", "/missing/dir/node1.tar.gz")

    def test_compress_file(self):
        """Test: A single file is gzipped without the tree archive."""
        fs = FakeFileSystem()
        fs.write_file("/tmp/node1.hprof", b"heap" * 100)
        strategy = CopyStrategy(fs)

        strategy.compress_file("/tmp/node1.hprof", "/tmp/node1.hprof.gz")

        assert gzip.decompress(fs.files["/tmp/node1.hprof.gz"]) == b"heap" * 100


class TestTransport:
    """Local commands and ssh/scp transport."""

    def test_clean_out_strips_exactly_first_line(self):
        """Test: Only the ssh banner line is removed."""
        assert clean_out("Warning: Permanently added\nLINE1\nLINE2") == "LINE1\nLINE2"
        assert clean_out("Warning: x\nLINE1\n\nLINE2\n") == "LINE1\n\nLINE2\n"
        assert clean_out("only a banner") == ""

    def test_find_hosts(self):
        """Test: Host lists are trimmed, blanks dropped, order kept."""
        assert find_hosts(" 10.0.0.2, ,10.0.0.1 ,,node-3") == ["10.0.0.2", "10.0.0.1", "node-3"]
        assert find_hosts("") == []

    def test_discover_hosts_by_role(self):
        """Test: Discovery tags hosts with their role."""
        ssh = SSHActions(cli=FakeCli(), coordinator_str="c1", executor_str="e1, e2")
        assert ssh.discover_hosts(Role.COORDINATOR) == [Host(address="c1", role=Role.COORDINATOR)]
        assert [h.address for h in ssh.discover_hosts(Role.EXECUTOR)] == ["e1", "e2"]

    def test_host_execute_disables_host_key_checks(self):
        """Test: ssh never prompts and the banner is stripped from output."""
        fake = FakeCli()
        ssh = SSHActions(cli=fake, ssh_key="/keys/id", ssh_user="admin")

        out = ssh.host_execute(False, "h1", "ls", "/tmp")

        assert out == "ok\n"
        assert fake.calls[0] == [
            "ssh", "-i", "/keys/id",
            "-o", "UserKnownHostsFile=/dev/null", "-o", "StrictHostKeyChecking=no",
            "admin@h1", "ls /tmp",
        ]

    def test_sudo_user_prefixes_remote_command(self):
        """Test: Privilege escalation runs the command through sudo -u."""
        fake = FakeCli()
        ssh = SSHActions(cli=fake, ssh_user="admin", sudo_user="dremio")
        ssh.host_execute(False, "h1", "cat", "/etc/hosts")
        assert fake.calls[0][-4:] == ["sudo", "-u", "dremio", "cat /etc/hosts"]

    def test_copy_to_host_without_sudo_is_plain_scp(self):
        """Test: Without sudo a copy is a single scp."""
        fake = FakeCli()
        SSHActions(cli=fake, ssh_user="admin").copy_to_host("h1", "/local/ddc.json", "/remote/ddc.json")
        assert len(fake.calls) == 1
        assert fake.calls[0][0] == "scp"
        assert fake.calls[0][-2:] == ["/local/ddc.json", "admin@h1:/remote/ddc.json"]

    def test_sudo_copy_survives_cleanup_failure(self, caplog):
        """Test: Failing to delete the staged file is only a warning."""
        def respond(args):
            if args[-1].startswith("rm "):
                raise CommandError(args[-1], 1, "permission denied")
            return ["Warning: banner\n", "copied\n"]

        fake = FakeCli(respond)
        ssh = SSHActions(cli=fake, ssh_user="admin", sudo_user="dremio")
        caplog.set_level(logging.WARNING, logger="ddc")

        out = ssh.copy_to_host("h1", "/local/file", "/opt/dremio/conf/file")

        assert out == "copied\n"
        staged = fake.calls[0][-1].split(":", 1)[1]
        assert staged.startswith("/tmp/")
        assert fake.calls[1][-1] == f"cp {staged} /opt/dremio/conf/file"
        assert fake.calls[2][-1] == f"rm {staged}"
        assert "failed to remove file" in caplog.text

    def test_sudo_copy_failure_still_cleans_up(self):
        """Test: A failed privileged move raises but the staged file is removed."""
        def respond(args):
            if args[-1].startswith("cp "):
                raise CommandError(args[-1], 1, "denied")
            return ["banner\n"]

        fake = FakeCli(respond)
        ssh = SSHActions(cli=fake, sudo_user="dremio")
        with pytest.raises(CommandError):
            ssh.copy_to_host("h1", "/local/file", "/opt/file")
        assert fake.calls[-1][-1].startswith("rm /tmp/")

    def test_sudo_copy_from_host_is_staged(self):
        """Test: Downloads with sudo go through a staged copy."""
        fake = FakeCli()
        ssh = SSHActions(cli=fake, sudo_user="dremio")
        ssh.copy_from_host("h1", "/var/log/dremio/server.log", "/local/server.log")
        assert fake.calls[0][-1].startswith("cp /var/log/dremio/server.log /tmp/")
        assert fake.calls[1][0] == "scp"
        assert fake.calls[2][-1].startswith("rm /tmp/")

    def test_cli_redacts_secret_in_logs(self, caplog):
        """Test: Tokens passed on the command line never reach the log."""
        caplog.set_level(logging.DEBUG, logger="ddc")
        lines = []
        Cli().execute_and_stream_output(False, lines.append, "s3cr3t", "echo", "token=s3cr3t")
        assert lines == ["token=s3cr3t\n"]
        assert "s3cr3t" not in caplog.text
        assert "REDACTED" in caplog.text

        caplog.clear()
        Cli().execute_and_stream_output(True, lines.append, "s3cr3t", "echo", "token=s3cr3t")
        assert "token" not in caplog.text

    def test_cli_raises_on_failure(self):
        """Test: A non-zero exit becomes a CommandError."""
        with pytest.raises(CommandError) as exc:
            Cli().execute(False, "false")
        assert exc.value.returncode == 1


def make_client(handler, **kwargs):
    kwargs.setdefault("poll_interval", 0)
    return RestClient("http://dremio:9047", "tok", transport=httpx.MockTransport(handler), **kwargs)


def job_handler(states, polls):
    state_iter = iter(states)

    def handler(request):
        path = request.url.path
        if request.method == "POST" and path == "/api/v3/sql":
            assert json.loads(request.content) == {"sql": "SELECT * FROM sys.boot"}
            return httpx.Response(200, json={"id": "j1"})
        if path == "/api/v3/job/j1":
            polls.append(1)
            return httpx.Response(200, json={"jobState": next(state_iter)})
        if path == "/apiv2/job/j1/data":
            return httpx.Response(200, json={"returnedRowCount": 3, "rows": []})
        return httpx.Response(404)

    return handler


class TestRestClient:
    """REST client against a mock transport."""

    def test_rest_sends_bearer_token(self):
        """Test: Every request carries the token."""
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, content=b"report")

        with make_client(handler) as client:
            assert client.kvstore_report() == b"report"
        assert seen == ["Bearer tok"]

    def test_rest_non_200_is_error(self):
        """Test: Anything but 200 fails with the URL in the message."""
        with make_client(lambda request: httpx.Response(401)) as client:
            with pytest.raises(RestError) as exc:
                client.validate_credentials()
        assert exc.value.status == 401
        assert "http://dremio:9047/apiv2/login" in str(exc.value)

    def test_system_table_download_polls_until_completed(self):
        """Test: Running jobs are polled until COMPLETED."""
        polls = []
        with make_client(job_handler(["RUNNING", "PLANNING", "COMPLETED"], polls)) as client:
            body = client.download_system_table("boot", 100)
        assert json.loads(body)["returnedRowCount"] == 3
        assert len(polls) == 3

    def test_unknown_job_state_is_distinct_error(self):
        """Test: An unrecognised state is not treated as still running."""
        with make_client(job_handler(["RUNNING", "EXPLODED"], [])) as client:
            with pytest.raises(UnknownJobStateError):
                client.download_system_table("boot", 100)

    def test_failed_job_state_raises(self):
        """Test: FAILED ends polling with an error."""
        with make_client(job_handler(["FAILED"], [])) as client:
            with pytest.raises(RemoteJobFailedError):
                client.download_system_table("boot", 100)

    def test_polling_is_bounded(self):
        """Test: A job stuck in RUNNING times out after max_polls."""
        polls = []
        with make_client(job_handler(["RUNNING"] * 10, polls), max_polls=3) as client:
            with pytest.raises(JobPollTimeoutError):
                client.download_system_table("boot", 100)
        assert len(polls) == 3


class TestConfig:
    """Config loading and resolution."""

    def test_missing_token_disables_rest_categories(self):
        """Test: Without a token REST collection and profiles are switched off."""
        config = Config(dremio_pat_token="", number_job_profiles=100, collect_wlm=True).resolve(cpus=8)
        assert not config.collect_wlm
        assert not config.collect_kvstore_report
        assert not config.collect_system_tables_export
        assert config.number_job_profiles == 0
        assert config.quota.total == 0
        assert config.number_threads == 4

    def test_token_enables_quota_split(self):
        """Test: With a token the requested total is split."""
        config = Config(dremio_pat_token="tok").resolve(cpus=2)
        assert config.quota.total == 25000
        assert config.job_profiles_num_slow_exec == 10000
        assert config.collect_wlm

    def test_quota_override_adjusts_total(self):
        """Test: Overrides change the total that is collected."""
        config = Config(
            dremio_pat_token="tok", number_job_profiles=10, job_profiles_num_high_query_cost=5, collect_queries_json=False
        ).resolve()
        assert config.quota == SelectionQuota(slow_planning=2, slow_exec=4, high_cost=5, recent_errors=2)
        assert config.number_job_profiles == 13
        assert config.collect_queries_json

    def test_config_is_frozen_and_redacted(self):
        """Test: A resolved config cannot change and never dumps the token."""
        config = Config(dremio_pat_token="s3cr3t-pat").resolve()
        with pytest.raises(ValidationError):
            config.node_name = "other"
        dump = config.redacted_dump()
        assert dump["dremio_pat_token"] == "REDACTED"
        assert "s3cr3t-pat" not in json.dumps(dump, default=str)

    def test_config_sources(self, tmp_path, monkeypatch):
        """Test: Environment, file and explicit values are layered."""
        monkeypatch.setenv("DDC_NODE_NAME", "from-env")
        monkeypatch.setenv("DDC_DREMIO_LOG_DIR", "/env/logs")
        assert Config().node_name == "from-env"

        config_file = tmp_path / "ddc.json"
        config_file.write_text(json.dumps({"dremio_log_dir": "/file/logs", "node_role": "executor"}))
        config = Config.load(str(config_file), number_threads=3, dremio_endpoint=None)

        assert config.dremio_log_dir == "/file/logs"
        assert config.node_role == Role.EXECUTOR
        assert config.number_threads == 3
        assert config.dremio_endpoint == "http://localhost:9047"
        with pytest.raises(FileNotFoundError):
            Config.load(str(tmp_path / "missing.json"))


def node_setup(fs=None, **overrides):
    fs = fs or FakeFileSystem()
    values = dict(node_name="node1", dremio_conf_dir="/conf", dremio_log_dir="/logs", number_threads=2)
    values.update(overrides)
    config = Config(**values).resolve()
    strategy = CopyStrategy(fs)
    return fs, config, strategy


class TestNodeCollectors:
    """Node collection jobs on the in-memory file system."""

    def test_parse_gc_log_from_flags(self):
        """Test: The gc log directory comes from the last -Xloggc flag."""
        flags = "java -Xms1g -Xloggc:/old/gc.log -Xloggc:/var/log/dremio/gc.log -cp x DremioDaemon"
        assert parse_gc_log_from_flags(flags) == "/var/log/dremio"
        assert parse_gc_log_from_flags("java -cp x") == ""

    def test_collect_dremio_config_copies_available_files(self):
        """Test: Missing config files are skipped, present ones copied and recorded."""
        fs, config, strategy = node_setup()
        fs.write_file("/conf/dremio.conf", b"paths.local: /data")
        fs.write_file("/conf/dremio-env", b"DREMIO_MAX_MEMORY_SIZE_MB=8192")

        NodeCollectors(config, strategy, cli=FakeCli()).collect_dremio_config()

        out = strategy.create_path("configuration", "node1", "coordinator")
        assert fs.files[os.path.join(out, "dremio.conf")] == b"paths.local: /data"
        assert os.path.join(out, "dremio.env") in fs.files
        assert len(strategy.collected_files) == 2

    def test_collect_logs_respects_age_and_archive_dir(self):
        """Test: Only recent matching logs are copied, archived ones included."""
        fs, config, strategy = node_setup(dremio_logs_num_days=7)
        now = time.time()
        fs.write_file("/logs/server.log", b"today")
        fs.write_file("/logs/server.out", b"out")
        fs.write_file("/logs/archive/server.2023-01-01.log.gz", b"gz", mtime=now - 2 * 86400)
        fs.write_file("/logs/archive/server.2020-01-01.log.gz", b"ancient", mtime=now - 100 * 86400)
        fs.write_file("/logs/queries.json", b"{}")

        NodeCollectors(config, strategy, cli=FakeCli()).collect_server_logs()

        out = strategy.create_path("logs", "node1", "coordinator")
        assert sorted(fs.read_dir(out)) == ["server.2023-01-01.log.gz", "server.log", "server.out"]

    def test_collect_logs_missing_dir_fails_job(self):
        """Test: A log directory that does not exist fails the job."""
        fs, config, strategy = node_setup(dremio_log_dir="/nope")
        with pytest.raises(CollectionError):
            NodeCollectors(config, strategy, cli=FakeCli()).collect_queries_json()

    def test_collect_logs_survives_rotated_file(self):
        """Test: A log rotated away after listing is skipped, the rest are copied."""
        class RotatingFileSystem(FakeFileSystem):
            def stat(self, path):
                if path == "/logs/server.out":
                    raise FileNotFoundError(path)
                return super().stat(path)

        fs, config, strategy = node_setup(fs=RotatingFileSystem())
        fs.write_file("/logs/server.log", b"today")
        fs.write_file("/logs/server.out", b"out")

        NodeCollectors(config, strategy, cli=FakeCli()).collect_server_logs()

        assert fs.read_dir(strategy.create_path("logs", "node1", "coordinator")) == ["server.log"]

    def test_collect_os_info_writes_headers_and_survives_failures(self):
        """Test: A failing command is logged and the rest still collected."""
        def respond(args):
            if args[-1] == "lsb_release -a":
                raise CommandError(args[-1], 127, "not found")
            return [f"output of {args[-1]}\n"]

        fs, config, strategy = node_setup()
        NodeCollectors(config, strategy, cli=FakeCli(respond)).collect_os_info()

        path = os.path.join(strategy.create_path("node-info", "node1", "coordinator"), "os_info.txt")
        content = fs.files[path].decode()
        assert "___\n>>> uname -r\noutput of uname -r\n" in content
        assert ">>> lsb_release -a\n___" in content

    def test_dremio_pid_parsing(self):
        """Test: The daemon pid is parsed from jps output."""
        fs, config, strategy = node_setup()
        assert NodeCollectors(config, strategy, cli=FakeCli(lambda args: ["4321\n"])).dremio_pid() == 4321
        with pytest.raises(CollectionError):
            NodeCollectors(config, strategy, cli=FakeCli(lambda args: [""])).dremio_pid()

    def test_collect_wlm_and_job_profile_over_rest(self):
        """Test: REST artifacts are written under the node's output."""
        def handler(request):
            return httpx.Response(200, content=request.url.path.encode())

        fs, config, strategy = node_setup(dremio_pat_token="tok")
        with make_client(handler) as client:
            collectors = NodeCollectors(config, strategy, cli=FakeCli(), client=client)
            collectors.collect_wlm()
            collectors.download_job_profile("abc")

        wlm = strategy.create_path("wlm", "node1", "coordinator")
        assert fs.files[os.path.join(wlm, "queues.json")] == b"/api/v3/wlm/queue"
        assert fs.files[os.path.join(wlm, "rules.json")] == b"/api/v3/wlm/rule"
        profiles = strategy.create_path("job-profiles", "node1", "coordinator")
        assert fs.files[os.path.join(profiles, "abc.zip")] == b"/apiv2/support/abc/download"


class RecordingCollectors:
    """Stands in for NodeCollectors and records what ran, in order."""

    def __init__(self, strategy, failing=(), queries=(), credentials_error=None):
        self.strategy = strategy
        self.credentials_error = credentials_error
        self.events = []
        self.failing = set(failing)
        self.queries = list(queries)
        self._lock = threading.Lock()

    @property
    def queries_dir(self):
        return self.strategy.create_path("queries", "node1", "coordinator")

    def __getattr__(self, name):
        if not name.startswith("collect_"):
            raise AttributeError(name)

        def job():
            time.sleep(0.005)
            if name == "collect_queries_json" and self.queries:
                path = os.path.join(self.queries_dir, "queries.json")
                with self.strategy.fs.create(path) as f:
                    f.write("\n".join(json.dumps(q) for q in self.queries).encode())
            with self._lock:
                self.events.append(name)
            if name in self.failing:
                raise RuntimeError(f"{name} broke")
        return job

    def validate_credentials(self):
        if self.credentials_error is not None:
            raise self.credentials_error

    def download_job_profile(self, job_id):
        with self._lock:
            self.events.append(("download", job_id))
        if f"download {job_id}" in self.failing:
            raise RestError("POST", f"/apiv2/support/{job_id}/download", status=500)


QUERIES = [
    {"queryId": f"q{i}", "runningTime": i * 10, "queryCost": i, "outcome": "COMPLETED", "start": i}
    for i in range(1, 6)
]


class TestOrchestrator:
    """Two phase collection runs."""

    def test_depth_phase_runs_after_breadth_phase(self):
        """Test: Profiles download only after every first phase job finished."""
        fs, config, strategy = node_setup(dremio_pat_token="tok", number_job_profiles=3, collect_jfr=False)
        collectors = RecordingCollectors(strategy, queries=QUERIES)

        Orchestrator(config, strategy, collectors).collect()

        downloads = [e for e in collectors.events if isinstance(e, tuple)]
        breadth = [e for e in collectors.events if not isinstance(e, tuple)]
        assert sorted(job_id for _, job_id in downloads) == ["q3", "q4", "q5"]
        assert collectors.events[:len(breadth)] == breadth
        assert "collect_jfr" not in breadth
        assert "collect_heap_dump" not in breadth
        assert "collect_wlm" in breadth

    def test_no_token_skips_rest_and_profiles(self):
        """Test: Without a token neither REST jobs nor downloads run."""
        fs, config, strategy = node_setup(dremio_pat_token="", number_job_profiles=3)
        collectors = RecordingCollectors(strategy, queries=QUERIES)

        Orchestrator(config, strategy, collectors).collect()

        assert not any(isinstance(e, tuple) for e in collectors.events)
        for name in ("collect_wlm", "collect_kvstore_report", "collect_system_tables"):
            assert name not in collectors.events

    def test_failed_job_still_produces_archive(self):
        """Test: A broken collector does not stop the archive."""
        fs, config, strategy = node_setup(dremio_pat_token="", collect_metrics=False)
        collectors = RecordingCollectors(strategy, failing=["collect_os_info"])
        orchestrator = Orchestrator(config, strategy, collectors)

        tarball = orchestrator.run()

        assert tarball == strategy.tmp_dir + "node1.tar.gz"
        assert "collect_disk_usage" in collectors.events
        assert "." in tar_names(fs.files[os.path.normpath(tarball)])

    def test_truncated_queries_archive_still_produces_archive(self):
        """Test: A queries.json.gz cut off mid rotation is skipped and the run is archived."""
        fs, config, strategy = node_setup(dremio_pat_token="tok", number_job_profiles=3, collect_metrics=False)
        collectors = RecordingCollectors(strategy, queries=QUERIES)
        rotated = gzip.compress("\n".join(json.dumps(q) for q in QUERIES * 20).encode())
        fs.write_file(os.path.join(collectors.queries_dir, "queries.2024-01-01.json.gz"), rotated[:len(rotated) // 2])

        tarball = Orchestrator(config, strategy, collectors).run()

        names = tar_names(fs.files[os.path.normpath(tarball)])
        assert "./coordinators/node1/queries/queries.2024-01-01.json.gz" in names
        downloads = sorted(job_id for _, job_id in (e for e in collectors.events if isinstance(e, tuple)))
        assert downloads == ["q3", "q4", "q5"]

    def test_profile_phase_error_still_produces_archive(self):
        """Test: An unexpected error while collecting job profiles does not stop the archive."""
        fs, config, strategy = node_setup(dremio_pat_token="tok", number_job_profiles=3, collect_metrics=False)
        collectors = RecordingCollectors(strategy, queries=QUERIES, credentials_error=RuntimeError("connection reset"))

        tarball = Orchestrator(config, strategy, collectors).run()

        assert os.path.normpath(tarball) in fs.files
        assert not any(isinstance(e, tuple) for e in collectors.events)

    def test_failed_download_does_not_stop_other_downloads(self):
        """Test: One failing profile download leaves the others and the archive intact."""
        fs, config, strategy = node_setup(dremio_pat_token="tok", number_job_profiles=3, collect_metrics=False)
        collectors = RecordingCollectors(strategy, failing=["download q4"], queries=QUERIES)

        tarball = Orchestrator(config, strategy, collectors).run()

        downloads = sorted(job_id for _, job_id in (e for e in collectors.events if isinstance(e, tuple)))
        assert downloads == ["q3", "q4", "q5"]
        assert os.path.normpath(tarball) in fs.files

    def test_rejected_token_skips_profile_downloads(self):
        """Test: Job profiles are not requested when the token is rejected."""
        requested = []

        def handler(request):
            requested.append(request.url.path)
            if request.url.path == "/apiv2/login":
                return httpx.Response(401)
            return httpx.Response(200, content=b"profile")

        fs, config, strategy = node_setup(dremio_pat_token="expired", number_job_profiles=3)
        with make_client(handler) as client:
            collectors = NodeCollectors(config, strategy, cli=FakeCli(), client=client)
            fs.write_file(
                os.path.join(collectors.queries_dir, "queries.json"),
                "\n".join(json.dumps(q) for q in QUERIES).encode(),
            )
            Orchestrator(config, strategy, collectors).run_depth_phase()

        assert requested == ["/apiv2/login"]
        assert fs.read_dir(strategy.create_path("job-profiles", "node1", "coordinator")) == []


class FakeTransport(SSHActions):
    """Pretends every host ran local-collect and left an archive behind."""

    def __init__(self, fs, coordinator_str="", executor_str="", failing=()):
        super().__init__(cli=FakeCli(), coordinator_str=coordinator_str, executor_str=executor_str)
        self.fs = fs
        self.failing = set(failing)
        self.streamed = []
        self.uploads = []

    def host_execute(self, mask, host, *args):
        return ""

    def host_execute_and_stream(self, mask, host, output, secret, *args):
        self.streamed.append((host, mask, list(args)))
        output(f"collected {host}\n")

    def copy_to_host(self, host, source, destination):
        self.uploads.append((host, source, destination))
        return ""

    def copy_from_host(self, host, source, destination):
        if host in self.failing:
            raise CommandError(f"scp {host}:{source}", 1, "lost connection")
        self.fs.write_file(destination, f"archive of {host}".encode())
        return ""


class TestRemoteCollector:
    """Fleet collection over a fake transport."""

    def test_remote_collect_gathers_every_host(self):
        """Test: Node archives land under their role and are archived together."""
        fs = FakeFileSystem()
        config = Config(dremio_pat_token="tok", number_threads=2).resolve()
        transport = FakeTransport(fs, coordinator_str="c1", executor_str="e1,e2", failing=["e2"])
        strategy = CopyStrategy(fs)

        RemoteCollector(config, transport, strategy, config_file="ddc.json").run("tmp/diag.tar.gz")

        names = tar_names(fs.files["tmp/diag.tar.gz"])
        assert "./coordinators/c1/archive/c1.tar.gz" in names
        assert "./executors/e1/archive/e1.tar.gz" in names
        assert "./executors/e2/archive/e2.tar.gz" not in names
        assert len(transport.uploads) == 3

        host, mask, args = next(s for s in transport.streamed if s[0] == "e1")
        assert mask
        assert args[:2] == ["ddc", "local-collect"]
        assert args[args.index("--node-role") + 1] == "executor"
        assert args[-2:] == ["--dremio-pat-token", "tok"]

    def test_remote_collect_without_hosts(self):
        """Test: No hosts is a setup error with help text."""
        fs = FakeFileSystem()
        config = Config().resolve()
        with pytest.raises(SetupError) as exc:
            RemoteCollector(config, FakeTransport(fs), CopyStrategy(fs)).run("tmp/diag.tar.gz")
        assert "comma separated" in str(exc.value)


class TestCli:
    """Command line entry points."""

    def test_local_collect_requires_consent(self):
        """Test: Without consent the form is printed and nothing runs."""
        runner = CliRunner()
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["local-collect", "--node-name", "n1", "--dremio-pat-token", "tok"])
        assert result.exit_code == 1
        assert "Data Collection Consent Form" in result.output
        assert "Java Flight Recorder" in result.output

    def test_local_collect_reports_unusable_output_dir(self):
        """Test: An output directory that cannot be created is a setup error."""
        runner = CliRunner()
        with runner.isolated_filesystem():
            Path("blocker").write_text("not a directory")
            result = runner.invoke(
                cli, ["local-collect", "--accept-collection-consent", "--tmp-output-dir", "blocker/out"]
            )
        assert result.exit_code == 1
        assert "unable to create output directory blocker/out" in result.output

    def test_cli_rejects_missing_config_file(self):
        """Test: A missing --config file is reported."""
        runner = CliRunner()
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ["remote-collect", "--config", "nope.json"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_consent_text_lists_enabled_categories_only(self):
        """Test: Disabled categories are left off the consent form."""
        text = consent_text(Config(capture_heap_dump=False, collect_jfr=True).resolve())
        assert "Java Flight Recorder" in text
        assert "heap dump" not in text
