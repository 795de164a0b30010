"""
Wraps the rclone binary: copies local torrent content to the remote and verifies the copy.
"""

import asyncio
import logging
import shlex
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, List, Optional

from qb_cloud_sync.models.config import RcloneSettings
from qb_cloud_sync.utils.formatting import truncate
from qb_cloud_sync.utils.path import join_remote

log = logging.getLogger(__name__)

# Only the end of each output stream is retained; long uploads print stats every 10s
OUTPUT_TAIL_LINES = 200
STREAM_LIMIT = 1024 * 1024

UPLOAD_FLAGS = (
    "--stats=10s",
    "--stats-one-line",
    "--retries=3",
    "--low-level-retries=10",
)


@dataclass
class UploadResult:
    success: bool
    remote_path: Optional[str] = None
    message: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0


@dataclass
class VerificationResult:
    verified: bool
    message: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0


@dataclass
class CommandOutput:
    """What a finished (or killed) rclone process left behind."""

    returncode: Optional[int]
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    launch_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def describe_failure(self, action: str, timeout: int) -> str:
        if self.launch_error:
            return f"Could not start rclone for {action}: {self.launch_error}"
        if self.timed_out:
            return f"rclone {action} timed out after {timeout}s"
        detail = truncate(self.stderr or self.stdout) or "no output"
        return f"rclone {action} failed with code {self.returncode}: {detail}"


async def _drain(stream: Optional[asyncio.StreamReader], sink: Deque[str]) -> None:
    if stream is None:
        return
    async for raw_line in stream:
        sink.append(raw_line.decode("utf-8", errors="replace").rstrip())


class RcloneUploader:
    """
    Runs rclone as a child process for uploads and checks.

    Both operations return result objects instead of raising; a timeout, a
    non-zero exit or a missing binary all become failed results.
    """

    def __init__(self, settings: RcloneSettings):
        self.settings = settings

    def remote_destination(self, remote_path: str) -> str:
        """The full rclone destination for a resolver-relative remote path."""
        return join_remote(self.settings.remote_name, self.settings.upload_path, remote_path)

    def _command(self, subcommand: str, *args: str) -> List[str]:
        command = [self.settings.binary, subcommand]
        if self.settings.config_path:
            command += ["--config", self.settings.config_path]
        command.extend(args)
        return command

    async def _run(self, command: List[str], timeout: int) -> CommandOutput:
        """Runs a command, keeping only the tail of its output, with a hard timeout."""
        log.debug(f"Running: {shlex.join(command)}")
        start = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            return CommandOutput(None, "", "", elapsed_ms(), launch_error=str(e))

        stdout_tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        stderr_tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _drain(process.stdout, stdout_tail),
                    _drain(process.stderr, stderr_tail),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            log.warning(f"rclone exceeded its {timeout}s timeout; killing it.")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

        return CommandOutput(
            returncode=process.returncode,
            stdout="\n".join(stdout_tail),
            stderr="\n".join(stderr_tail),
            duration_ms=elapsed_ms(),
            timed_out=timed_out,
        )

    async def upload(self, local_path: str, remote_path: str) -> UploadResult:
        """
        Copies a local file or directory to `<remote>:<upload_path>/<remote_path>`.

        A directory's contents are copied into the destination directory; a
        single file is placed inside it under its own name.
        """
        local = Path(local_path)
        destination = self.remote_destination(remote_path)
        flags = [*UPLOAD_FLAGS, *self.settings.extra_flags]

        if local.is_dir():
            command = self._command("copy", *flags, str(local), destination)
        elif local.is_file():
            command = self._command(
                "copyto", *flags, str(local), f"{destination}/{local.name}"
            )
        else:
            return UploadResult(
                success=False, message=f"Local path does not exist: {local_path}"
            )

        log.info(f"Uploading '{local_path}' -> '{destination}'")
        output = await self._run(command, self.settings.upload_timeout)

        if not output.ok:
            message = output.describe_failure("upload", self.settings.upload_timeout)
            log.error(f"[red]✗ Upload of '{local_path}' failed: {message}[/red]")
            return UploadResult(
                success=False,
                message=message,
                stdout=output.stdout,
                stderr=output.stderr,
                duration_ms=output.duration_ms,
            )

        if "error" in output.stderr.lower():
            log.warning(
                f"[yellow]rclone reported errors while uploading '{local_path}' but exited"
                f" cleanly: {truncate(output.stderr, 300)}[/yellow]"
            )
        log.info(f"[green]✓ Uploaded '{local_path}' in {output.duration_ms / 1000:.1f}s[/green]")
        return UploadResult(
            success=True,
            remote_path=destination,
            stdout=output.stdout,
            stderr=output.stderr,
            duration_ms=output.duration_ms,
        )

    async def verify(self, local_path: str, remote_path: str) -> VerificationResult:
        """
        Compares local content with the remote copy using `rclone check`.

        The check runs in both directions, so files missing on either side or
        differing in size or hash count as a mismatch.
        """
        local = Path(local_path)
        destination = self.remote_destination(remote_path)

        if not local.exists():
            return VerificationResult(
                verified=False, message=f"Local path does not exist: {local_path}"
            )

        command = self._command("check", str(local), destination)
        log.info(f"Verifying '{local_path}' against '{destination}'")
        output = await self._run(command, self.settings.verify_timeout)

        if not output.ok:
            message = output.describe_failure("check", self.settings.verify_timeout)
            log.error(f"[red]✗ Verification of '{local_path}' failed: {message}[/red]")
            return VerificationResult(
                verified=False,
                message=message,
                stdout=output.stdout,
                stderr=output.stderr,
                duration_ms=output.duration_ms,
            )

        log.info(f"[green]✓ '{local_path}' matches '{destination}'[/green]")
        return VerificationResult(
            verified=True,
            message="Files are in sync.",
            stdout=output.stdout,
            stderr=output.stderr,
            duration_ms=output.duration_ms,
        )

    async def version(self) -> Optional[str]:
        """Returns the first line of `rclone version`, or None if rclone can't run."""
        output = await self._run([self.settings.binary, "version"], timeout=30)
        if not output.ok:
            return None
        return output.stdout.splitlines()[0] if output.stdout else ""
