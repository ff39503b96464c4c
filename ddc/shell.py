"""Local command execution with streamed output."""

import logging
import subprocess
from typing import Callable, List
from .errors import CommandError
from .models import RemoteCommand, redact

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str], None]


class Cli:
    """Runs commands on the local host.

    stderr is merged into stdout so callers see output in the order the
    command produced it.
    """

    def execute(self, mask: bool, *args: str) -> str:
        """Run a command and return its combined output.

        Raises:
            CommandError: the command exited with a non-zero status
        """
        lines: List[str] = []
        self.execute_and_stream_output(mask, lines.append, "", *args)
        return "".join(lines)

    def execute_and_stream_output(self, mask: bool, output: OutputHandler, secret: str, *args: str) -> None:
        """Run a command, passing each output line to ``output`` as it arrives.

        When ``mask`` is set the command line is never logged. Otherwise it
        is logged with ``secret`` replaced.
        """
        command = RemoteCommand(args=list(args), mask=mask, secret=secret or None)
        if mask:
            logger.info("executing masked command")
        else:
            logger.info("executing command '%s'", command.redacted())

        captured: List[str] = []
        try:
            process = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            shown = "masked command" if mask else command.redacted()
            raise CommandError(shown, -1, str(e)) from e

        with process:
            for line in process.stdout:
                captured.append(line)
                if len(captured) > 20:
                    captured.pop(0)
                output(line)
            returncode = process.wait()

        if returncode != 0:
            shown = "masked command" if mask else command.redacted()
            tail = redact("".join(captured), secret)
            raise CommandError(shown, returncode, tail)


def shell(cli: Cli, output: OutputHandler, command: str) -> None:
    """Run ``command`` through bash, streaming its output."""
    cli.execute_and_stream_output(False, output, "", "bash", "-c", command)
