"""Abstract seams between the install core and its collaborators.

The reconciler never reaches for global state: everything it talks to is
passed in as one of these interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from .elevation import OperationBatch
    from .streaming import StatusEvent


class EventSink(ABC):
    """Receives status events from plugin operations.

    ``emit`` is called on the same flow of control as the operation itself,
    so implementations must return quickly and must not block.
    """

    @abstractmethod
    def emit(self, event: StatusEvent) -> None:
        """Handle one event.

        Args:
            event: The status event.
        """
        ...


class HostPrompter(ABC):
    """Asks the operator where the host application is installed."""

    @abstractmethod
    def prompt_for_executable(self, executable_name: str, initial_dir: Path | None) -> Path | None:
        """Ask the operator to select the host executable.

        Args:
            executable_name: File name the selection is scoped to.
            initial_dir: Directory to start browsing from, if any.

        Returns:
            Path to the selected executable, or None if the operator cancelled.
        """
        ...


class NoPrompter(HostPrompter):
    """Prompter for unattended use; always behaves as if cancelled."""

    def prompt_for_executable(self, executable_name: str, initial_dir: Path | None) -> Path | None:
        """Return None without asking anyone."""
        return None


class BatchExecutor(ABC):
    """Applies a batch of filesystem operations."""

    @abstractmethod
    async def run_elevated(self, batch: OperationBatch) -> str:
        """Run every operation in the batch, behind at most one elevation prompt.

        Args:
            batch: Operations to run, in order.

        Returns:
            Output collected while running the batch.

        Raises:
            ElevationDeniedError: If elevation was refused.
            ExecutionFailedError: If the batch did not complete.
        """
        ...
