"""Command execution inside running pods over the Kubernetes exec channel."""

import io
import shlex
from typing import BinaryIO, Callable, List, Optional

from websocket import WebSocketException

from cnvrgctl.constants import EXEC_CHUNK_SIZE
from cnvrgctl.errors import RemoteExecutionError, TransportError
from cnvrgctl.models import ExecResult, ExecTarget


class RemoteCommandChannel:
    """Runs one command per call and collects its streams and exit status."""

    UPDATE_TIMEOUT_SECONDS = 1

    def __init__(self, cluster, logger):
        self.cluster = cluster
        self.logger = logger

    def execute(
        self,
        target: ExecTarget,
        argv: List[str],
        stdin: Optional[BinaryIO] = None,
        stdout_sink: Optional[Callable[[bytes], None]] = None,
        check: bool = True,
    ) -> ExecResult:
        """Executes ``argv`` in ``target`` and blocks until the process exits.

        When ``stdout_sink`` is given, stdout chunks are handed to it as they
        arrive and the returned ``ExecResult.stdout`` is empty. Otherwise stdout
        is buffered. With ``check`` enabled a non-zero or missing exit status
        raises ``RemoteExecutionError``; stderr output alone does not.
        """
        cmd_str = shlex.join(argv)
        self.logger.debug("Executing in %s: %s", target, cmd_str)

        stdout_buffer = io.BytesIO()
        stderr_buffer = io.BytesIO()
        sink = stdout_sink or stdout_buffer.write

        session = self.cluster.open_exec(target, argv, stdin=stdin is not None)
        try:
            if stdin is not None:
                for chunk in iter(lambda: stdin.read(EXEC_CHUNK_SIZE), b""):
                    session.write_stdin(chunk)

            while session.is_open():
                session.update(timeout=self.UPDATE_TIMEOUT_SECONDS)
                self._drain(session, sink, stderr_buffer)
            self._drain(session, sink, stderr_buffer)

            exit_code = self._exit_code(session)
        except (OSError, ValueError, WebSocketException) as exc:
            raise TransportError(f"Exec stream to {target} failed: {cmd_str}. {exc}") from exc
        finally:
            session.close()

        result = ExecResult(
            stdout=stdout_buffer.getvalue(),
            stderr=stderr_buffer.getvalue(),
            exit_code=exit_code,
        )

        if result.stderr_text:
            self.logger.debug("Remote stderr: %s", result.stderr_text)

        if check and result.exit_code != 0:
            if result.exit_code is None:
                message = f"Remote command ended without an exit status in {target}: {cmd_str}"
            else:
                message = f"Remote command failed ({result.exit_code}) in {target}: {cmd_str}"
            if result.stderr_text:
                message = f"{message}\n{result.stderr_text}"
            raise RemoteExecutionError(message, exit_code=result.exit_code, stderr=result.stderr_text)

        return result

    @staticmethod
    def _drain(session, sink: Callable[[bytes], None], stderr_buffer: io.BytesIO):
        if session.peek_stdout():
            data = session.read_stdout()
            if data:
                sink(data)
        if session.peek_stderr():
            data = session.read_stderr()
            if data:
                stderr_buffer.write(data)

    def _exit_code(self, session) -> Optional[int]:
        try:
            return session.returncode
        except (TypeError, KeyError, IndexError, ValueError) as exc:
            self.logger.debug("Could not parse remote exit status: %s", exc)
            return None
