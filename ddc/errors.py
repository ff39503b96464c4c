"""Exceptions raised by ddc."""

from typing import List, Optional, Sequence


class DDCError(Exception):
    """Base class for all ddc errors."""


class SetupError(DDCError):
    """The run could not be prepared (output directories and similar)."""


class ArchiveError(DDCError):
    """The final archive could not be produced."""


class CollectionError(DDCError):
    """A collection job failed."""


class CommandError(CollectionError):
    """A local or remote command exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, output: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"command '{command}' failed with exit code {returncode}"
        if output:
            message += f": {output.strip()[-500:]}"
        super().__init__(message)


class RestError(CollectionError):
    """A REST call did not return 200."""

    def __init__(self, method: str, url: str, status: Optional[int] = None, reason: str = ""):
        self.method = method
        self.url = url
        self.status = status
        detail = f"status {status}" if status is not None else reason
        super().__init__(f"{method} {url} failed: {detail}")


class RemoteJobFailedError(CollectionError):
    """A REST query job ended in FAILED or CANCELED."""


class UnknownJobStateError(CollectionError):
    """A REST query job reported a state we do not know about."""


class JobPollTimeoutError(CollectionError):
    """A REST query job was still running after the polling budget ran out."""


class JobError(DDCError):
    """A single job failure recorded by a worker pool."""

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"job {name} failed: {cause}")


class PoolError(DDCError):
    """One or more jobs in a worker pool failed."""

    def __init__(self, errors: Sequence[JobError]):
        self.errors: List[JobError] = list(errors)
        summary = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} job(s) failed: {summary}")
