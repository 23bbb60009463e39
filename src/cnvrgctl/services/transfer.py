"""Artifact transfer between pods and the local filesystem."""

import os
import shlex
import tempfile

from cnvrgctl.errors import TransferError
from cnvrgctl.errors_catalog import actionable_error
from cnvrgctl.models import ExecTarget


class ArtifactTransferService:
    """Pulls backup files out of pods and pushes them back in."""

    def __init__(self, channel, filesystem_service, logger, console):
        self.channel = channel
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console

    def pull(self, target: ExecTarget, remote_path: str, local_directory: str, file_name: str) -> str:
        """Streams ``remote_path`` into ``local_directory/file_name``.

        Bytes go to a temporary file beside the destination, which replaces the
        destination only once the remote ``cat`` exited cleanly.
        """
        self.filesystem_service.ensure_directory(local_directory)
        dest_path = os.path.join(local_directory, file_name)
        self.logger.info("Copying %s:%s to %s", target, remote_path, dest_path)

        try:
            fd, temp_path = tempfile.mkstemp(prefix=f".{file_name}-", dir=local_directory)
        except OSError as exc:
            raise TransferError(f"Cannot write to {local_directory}: {exc}") from exc

        received = 0
        try:
            with os.fdopen(fd, "wb") as file_obj:

                def write_chunk(chunk: bytes):
                    nonlocal received
                    try:
                        file_obj.write(chunk)
                    except OSError as exc:
                        raise TransferError(f"Failed writing {dest_path}: {exc}") from exc
                    received += len(chunk)

                self.channel.execute(target, ["cat", remote_path], stdout_sink=write_chunk)

            os.replace(temp_path, dest_path)
        except OSError as exc:
            raise TransferError(f"Failed to save {dest_path}: {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self.logger.info("Saved %s (%s bytes)", dest_path, received)
        return dest_path

    def push(self, target: ExecTarget, local_file_path: str, remote_destination: str):
        """Streams a local file into ``remote_destination`` inside the pod.

        The remote side reads exactly the file size from stdin, so no
        end-of-stream signal is needed. The local handle stays open until the
        remote command has exited.
        """
        if not os.path.isfile(local_file_path):
            raise TransferError(actionable_error("local_file_not_found", path=local_file_path))

        size = os.path.getsize(local_file_path)
        if size == 0:
            self.logger.warning("Local file %s is empty.", local_file_path)

        command = ["sh", "-c", f"head -c {size} > {shlex.quote(remote_destination)}"]
        self.logger.info("Copying %s to %s:%s (%s bytes)", local_file_path, target, remote_destination, size)

        try:
            with open(local_file_path, "rb") as file_obj:
                self.channel.execute(target, command, stdin=file_obj)
        except OSError as exc:
            raise TransferError(f"Failed reading {local_file_path}: {exc}") from exc
