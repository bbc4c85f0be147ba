"""Detect whether the host application is running.

Best effort: the process list is captured with the platform's listing
tool and searched for the process name. A missed process is an accepted
risk. A listing failure is logged and reported as "not running".
"""

from __future__ import annotations

import asyncio
import contextlib
import sys

import structlog

logger = structlog.get_logger(__name__)


def default_listing_command() -> list[str]:
    """Return the process-listing command for this platform."""
    if sys.platform == "win32":
        return ["tasklist", "/NH", "/FO", "CSV"]
    return ["ps", "-A", "-o", "args="]


class ProcessGuard:
    """Checks the process list for the host application."""

    def __init__(
        self,
        process_name: str = "vatSys.exe",
        command: list[str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the guard.

        Args:
            process_name: Default process name to look for.
            command: Process-listing command. Defaults to the platform's tool.
            timeout: Seconds to wait for the listing.
        """
        self.process_name = process_name
        self.command = command or default_listing_command()
        self.timeout = timeout
        self._log = logger.bind(component="process_guard")

    async def list_processes(self) -> str | None:
        """Capture the raw process listing.

        Returns:
            The listing output, or None if it could not be captured.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._log.warning("process_listing_failed", command=self.command[0], error=str(e))
            return None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            self._log.warning("process_listing_timeout", timeout=self.timeout)
            return None

        if process.returncode != 0:
            self._log.warning(
                "process_listing_failed",
                command=self.command[0],
                exit_code=process.returncode,
                stderr=stderr.decode("utf-8", errors="replace").strip()[:200],
            )
            return None

        return stdout.decode("utf-8", errors="replace")

    async def is_running(self, name: str | None = None) -> bool:
        """Check whether a process is running.

        Args:
            name: Process name to look for. Defaults to the host process.

        Returns:
            True if the name appears in the process listing.
        """
        target = name or self.process_name
        listing = await self.list_processes()
        if listing is None:
            return False

        running = target.lower() in listing.lower()
        self._log.debug("process_checked", process=target, running=running)
        return running
