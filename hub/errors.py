"""Error taxonomy for the plugin hub.

Every failure the install core can hit maps to one of these classes. The
reconciler catches all of them at its boundary and turns them into terminal
status events, so callers only ever see events, never these exceptions.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for all hub errors."""


class HostNotConfiguredError(HubError):
    """Raised when the host application location cannot be resolved."""


class HostBusyError(HubError):
    """Raised when the host application is running and files may be locked."""

    def __init__(self, process_name: str) -> None:
        """Initialize the error.

        Args:
            process_name: Name of the running host process.
        """
        self.process_name = process_name
        super().__init__(f"{process_name} is running; close it before changing plugins")


class NetworkError(HubError):
    """Raised when a release lookup or asset download fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        """Initialize the error.

        Args:
            message: Error message.
            status: HTTP status code, if the server answered.
        """
        super().__init__(message)
        self.status = status


class ReleaseNotFoundError(NetworkError):
    """Raised when a repository has no published release."""


class MalformedArchiveError(HubError):
    """Raised when an archive does not contain a recognisable plugin payload."""


class ElevationDeniedError(HubError):
    """Raised when the operator refuses (or cannot grant) elevated privileges."""

    def __init__(self, message: str, output: str = "") -> None:
        """Initialize the error.

        Args:
            message: Error message.
            output: Whatever the elevation helper printed before failing.
        """
        super().__init__(message)
        self.output = output


class ExecutionFailedError(HubError):
    """Raised when a privileged batch ran but did not complete successfully."""

    def __init__(self, message: str, output: str = "", exit_code: int | None = None) -> None:
        """Initialize the error.

        Args:
            message: Error message.
            output: Partial output collected from the batch, for diagnostics.
            exit_code: Exit code reported by the helper, if any.
        """
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


class VersionUnparseableError(HubError):
    """Raised when a version string is not a valid semantic version.

    This is a degraded-data condition, not a failure: update checks treat
    it as "no update available".
    """


class OperationInProgressError(HubError):
    """Raised when another operation on the same plugin does not finish in time."""

    def __init__(self, key: str, holder: str | None, waited: float) -> None:
        """Initialize the error.

        Args:
            key: Plugin name the operation is keyed on.
            holder: Description of the operation currently holding the key.
            waited: Seconds spent waiting before giving up.
        """
        self.key = key
        self.holder = holder
        self.waited = waited
        super().__init__(
            f"Another operation on {key} is still running ({holder}); gave up after {waited:.1f}s"
        )
