"""Bounded asynchronous remote script execution over SSH.

Scripts are piped to ``bash -s`` on the target host through the system
``ssh`` client, so no SSH library is needed and every option the local
ssh config supports keeps working. Concurrency is limited by a semaphore;
each run has its own timeout.

Cancelling the calling task terminates the ssh subprocess (SIGTERM, then
SIGKILL) before the cancellation propagates, so a provisioning deadline
never leaves remote sessions running behind it.

Usage:
    runner = RemoteScriptRunner(RunnerConfig(user="ubuntu", max_concurrent=10))
    response = await runner.run("10.0.0.5", "echo hello", timeout_seconds=60)
    print(response.output, response.exit_status)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from fleetplane.errors import NETWORK_ERRORS, NodeInstallFailure
from fleetplane.providers.base import ExecResponse

__all__ = [
    "RemoteScriptRunner",
    "RunnerConfig",
]

logger = logging.getLogger(__name__)


@dataclass
class RunnerConfig:
    """Settings for the remote script runner.

    Attributes:
        user: Login user
        port: SSH port
        key_path: Private key passed with -i (ssh default keys when None)
        connect_timeout: Seconds before ssh gives up connecting
        default_timeout: Per-script timeout when the caller gives none
        kill_timeout: Wait after SIGTERM before SIGKILL
        max_concurrent: Maximum concurrent ssh sessions
        extra_options: Additional ``-o`` options
    """

    user: str = "ubuntu"
    port: int = 22
    key_path: str | None = None
    connect_timeout: float = 30.0
    default_timeout: float = 600.0
    kill_timeout: float = 5.0
    max_concurrent: int = 10
    extra_options: dict[str, str] = field(default_factory=dict)


class RemoteScriptRunner:
    """Runs shell scripts on remote hosts with bounded concurrency."""

    def __init__(self, config: RunnerConfig | None = None):
        self.config = config or RunnerConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        self._active: set[asyncio.subprocess.Process] = set()

        self._total_executed = 0
        self._total_timed_out = 0
        self._total_cancelled = 0

    def build_command(self, host: str, user: str | None = None) -> list[str]:
        command = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={int(self.config.connect_timeout)}",
            "-p", str(self.config.port),
        ]
        for key, value in self.config.extra_options.items():
            command += ["-o", f"{key}={value}"]
        if self.config.key_path:
            command += ["-i", self.config.key_path]
        command += [f"{user or self.config.user}@{host}", "bash", "-s"]
        return command

    async def run(
        self,
        host: str,
        script: str,
        timeout_seconds: float | None = None,
        user: str | None = None,
    ) -> ExecResponse:
        """Run ``script`` on ``host``.

        Returns:
            ExecResponse with stdout, stderr and the ssh exit status

        Raises:
            NodeInstallFailure: If the ssh client cannot be started or the
                script exceeds its timeout
        """
        timeout = timeout_seconds or self.config.default_timeout
        command = self.build_command(host, user)

        async with self._semaphore:
            start = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except NETWORK_ERRORS as e:
                raise NodeInstallFailure(f"Could not start ssh to {host}: {e}", node_id=host) from e
            self._active.add(proc)
            try:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(script.encode("utf-8")),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                self._total_timed_out += 1
                await self._terminate_process(proc, host)
                raise NodeInstallFailure(
                    f"Script on {host} timed out after {timeout}s", node_id=host
                ) from None
            except asyncio.CancelledError:
                self._total_cancelled += 1
                await self._terminate_process(proc, host)
                raise
            finally:
                self._active.discard(proc)

            self._total_executed += 1
            exit_code = proc.returncode if proc.returncode is not None else -1
            logger.debug(
                f"[RemoteScriptRunner] {host} exited {exit_code} "
                f"in {time.monotonic() - start:.1f}s"
            )
            return ExecResponse(
                output=stdout.decode("utf-8", errors="replace") if stdout else "",
                error=stderr.decode("utf-8", errors="replace") if stderr else "",
                exit_status=exit_code,
            )

    async def _terminate_process(self, proc: asyncio.subprocess.Process, host: str) -> None:
        """Terminate with SIGTERM, then SIGKILL."""
        try:
            proc.terminate()
            logger.warning(f"[RemoteScriptRunner] Sending SIGTERM to ssh session on {host}")
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.config.kill_timeout)
                return
            except asyncio.TimeoutError:
                pass
            logger.warning(f"[RemoteScriptRunner] SIGTERM failed, sending SIGKILL on {host}")
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"[RemoteScriptRunner] Error terminating ssh session on {host}: {e}")

    async def cancel_all(self) -> int:
        """Terminate every running ssh session. Returns the number terminated."""
        procs = list(self._active)
        for proc in procs:
            await self._terminate_process(proc, "<any>")
        self._active.clear()
        return len(procs)

    def get_active_count(self) -> int:
        return len(self._active)

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_concurrent": self.config.max_concurrent,
            "active_count": len(self._active),
            "total_executed": self._total_executed,
            "total_timed_out": self._total_timed_out,
            "total_cancelled": self._total_cancelled,
        }
