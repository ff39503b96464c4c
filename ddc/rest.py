"""REST calls against the cluster's HTTP API.

Every request carries the personal access token as a bearer header. Any
response other than 200 is an error. Bodies are only parsed far enough to
pull out a job id or state.
"""

import json
import logging
import time
from typing import Dict, Optional
import httpx
from .errors import JobPollTimeoutError, RemoteJobFailedError, RestError, UnknownJobStateError
from .models import RemoteJobState

logger = logging.getLogger(__name__)

# What to do after seeing each state while polling a query job.
CONTINUE = "continue"
DONE = "done"
FAIL = "fail"

JOB_STATE_TRANSITIONS: Dict[RemoteJobState, str] = {
    RemoteJobState.NOT_SUBMITTED: CONTINUE,
    RemoteJobState.STARTING: CONTINUE,
    RemoteJobState.RUNNING: CONTINUE,
    RemoteJobState.ENQUEUED: CONTINUE,
    RemoteJobState.PLANNING: CONTINUE,
    RemoteJobState.PENDING: CONTINUE,
    RemoteJobState.METADATA_RETRIEVAL: CONTINUE,
    RemoteJobState.QUEUED: CONTINUE,
    RemoteJobState.ENGINE_START: CONTINUE,
    RemoteJobState.EXECUTION_PLANNING: CONTINUE,
    RemoteJobState.CANCELLATION_REQUESTED: CONTINUE,
    RemoteJobState.COMPLETED: DONE,
    RemoteJobState.FAILED: FAIL,
    RemoteJobState.CANCELED: FAIL,
}

JSON_HEADERS = {"Content-Type": "application/json"}
BINARY_HEADERS = {"Accept": "application/octet-stream"}


class RestClient:
    """Synchronous client for the cluster REST API.

    Usage:
        with RestClient("http://localhost:9047", token) as client:
            client.validate_credentials()
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        timeout: float = 5.0,
        poll_interval: float = 0.1,
        max_polls: int = 3000,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._token = token
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def __enter__(self) -> "RestClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, path: str, headers: Optional[Dict[str, str]] = None, body: Optional[bytes] = None) -> bytes:
        """Send a request and return the response body.

        Raises:
            RestError: the request failed or returned a status other than 200
        """
        url = self.endpoint + path
        logger.info("Requesting %s %s", method, url)
        request_headers = {"Authorization": "Bearer " + self._token}
        request_headers.update(headers or {})
        try:
            response = self._client.request(method, url, headers=request_headers, content=body)
        except httpx.HTTPError as e:
            raise RestError(method, url, reason=str(e)) from e
        if response.status_code != 200:
            raise RestError(method, url, status=response.status_code)
        return response.content

    def _json(self, method: str, path: str, body: Optional[bytes] = None) -> dict:
        content = self.request(method, path, JSON_HEADERS, body)
        try:
            data = json.loads(content)
        except ValueError as e:
            raise RestError(method, self.endpoint + path, reason=f"unable to parse JSON response: {e}") from e
        if not isinstance(data, dict):
            raise RestError(method, self.endpoint + path, reason="expected a JSON object")
        return data

    def validate_credentials(self) -> None:
        logger.info("Validating REST API user credentials...")
        self.request("GET", "/apiv2/login", JSON_HEADERS)

    def post_query(self, sql: str) -> str:
        """Submit a SQL query and return its job id."""
        data = self._json("POST", "/api/v3/sql", json.dumps({"sql": sql}).encode())
        job_id = data.get("id")
        if not job_id:
            raise RestError("POST", self.endpoint + "/api/v3/sql", reason="response has no job id")
        return str(job_id)

    def job_state(self, job_id: str) -> RemoteJobState:
        """Current state of a query job.

        Raises:
            UnknownJobStateError: the server reported a state we do not model
        """
        data = self._json("GET", f"/api/v3/job/{job_id}")
        raw = data.get("jobState")
        try:
            return RemoteJobState(raw)
        except ValueError:
            raise UnknownJobStateError(f"job {job_id} reported unknown state '{raw}'") from None

    def wait_for_job(self, job_id: str) -> None:
        """Poll a query job until it completes.

        Raises:
            RemoteJobFailedError: the job ended FAILED or CANCELED
            UnknownJobStateError: the job reported an unrecognised state
            JobPollTimeoutError: still running after ``max_polls`` polls
        """
        for _ in range(self.max_polls):
            time.sleep(self.poll_interval)
            state = self.job_state(job_id)
            action = JOB_STATE_TRANSITIONS[state]
            if action == DONE:
                return
            if action == FAIL:
                raise RemoteJobFailedError(f"job {job_id} ended in state {state.value}")
        raise JobPollTimeoutError(
            f"job {job_id} still running after {self.max_polls} polls every {self.poll_interval}s"
        )

    def download_system_table(self, table: str, row_limit: int) -> bytes:
        """Run ``SELECT * FROM sys.<table>`` and return the result page."""
        logger.info("Collecting sys.%s", table)
        job_id = self.post_query(f"SELECT * FROM sys.{table}")
        self.wait_for_job(job_id)
        logger.info("Retrieving job results ...")
        return self.request("GET", f"/apiv2/job/{job_id}/data?offset=0&limit={row_limit}", JSON_HEADERS)

    def download_job_profile(self, job_id: str) -> bytes:
        return self.request("POST", f"/apiv2/support/{job_id}/download", BINARY_HEADERS)

    def kvstore_report(self) -> bytes:
        return self.request("GET", "/apiv2/kvstore/report", BINARY_HEADERS)

    def wlm_queues(self) -> bytes:
        return self.request("GET", "/api/v3/wlm/queue", JSON_HEADERS)

    def wlm_rules(self) -> bytes:
        return self.request("GET", "/api/v3/wlm/rule", JSON_HEADERS)
