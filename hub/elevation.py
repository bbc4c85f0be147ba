"""Privileged filesystem operations.

Plugin directories usually live under a protected location, so every
change to them is collected into an OperationBatch and applied in one go:

- PrivilegedExecutor renders the batch into a script with a platform
  adapter (PowerShell on Windows, POSIX shell elsewhere) and runs it
  behind a single elevation prompt.
- LocalExecutor applies the same batch in-process when the target is
  writable by the current user.

Paths are never spliced into commands unquoted. Each adapter quotes every
path with its shell's literal-string rules.

A privileged batch only counts as successful when its output contains a
per-run sentinel written after the last operation. Elevation helpers can
hide the real exit status, so a zero exit code alone proves nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import shutil
import sys
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .errors import ElevationDeniedError, ExecutionFailedError, MalformedArchiveError
from .interfaces import BatchExecutor
from .staging import safe_extract_zip

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .models import HubConfig

logger = structlog.get_logger(__name__)

# Locations the current user cannot write to without elevation.
WINDOWS_PROTECTED_PATHS = [
    r"C:\PROGRAM FILES",
    r"C:\PROGRAM FILES (X86)",
    r"C:\WINDOWS",
]

_POSIX_DENIED_MARKERS = (
    "incorrect password",
    "a password is required",
    "is not in the sudoers file",
    "not allowed to execute",
    "request dismissed",
    "not authorized",
)

_WINDOWS_DENIED_MARKERS = (
    "canceled by the user",
    "cancelled by the user",
)


class OpKind(str, Enum):
    """Kinds of filesystem operation a batch can hold."""

    COPY = "copy"
    MOVE = "move"
    DELETE = "delete"
    MKDIR = "mkdir"
    EXTRACT = "extract"


@dataclass(frozen=True)
class FileOperation:
    """One filesystem operation.

    Attributes:
        kind: What to do.
        target: Destination (or the path to delete/create).
        source: Source file, directory or archive, where the kind has one.
    """

    kind: OpKind
    target: Path
    source: Path | None = None

    def describe(self) -> str:
        """Human-readable one-line summary."""
        if self.source is not None:
            return f"{self.kind.value} {self.source} -> {self.target}"
        return f"{self.kind.value} {self.target}"


def _check_path(path: Path) -> Path:
    if not path.is_absolute():
        raise ValueError(f"Batch paths must be absolute: {path}")
    text = str(path)
    if "\x00" in text or "\n" in text or "\r" in text:
        raise ValueError(f"Batch path contains control characters: {text!r}")
    return path


class OperationBatch:
    """Ordered list of filesystem operations applied as one unit.

    Builder methods return the batch, so calls can be chained::

        batch = (
            OperationBatch("install vatACARS")
            .delete(plugin_dir)
            .copy(staged_dir, plugin_dir)
        )

    Copy and move replace nothing by themselves. Delete the target first
    for a clean replacement.
    """

    def __init__(self, description: str = "") -> None:
        """Initialize an empty batch.

        Args:
            description: What the batch is for, used in logs.
        """
        self.description = description
        self.operations: list[FileOperation] = []

    def _add(self, kind: OpKind, target: Path, source: Path | None = None) -> OperationBatch:
        self.operations.append(
            FileOperation(
                kind=kind,
                target=_check_path(target),
                source=_check_path(source) if source is not None else None,
            )
        )
        return self

    def copy(self, source: Path, target: Path) -> OperationBatch:
        """Copy a file or directory tree to ``target``."""
        return self._add(OpKind.COPY, target, source)

    def move(self, source: Path, target: Path) -> OperationBatch:
        """Move a file or directory to ``target``."""
        return self._add(OpKind.MOVE, target, source)

    def delete(self, target: Path) -> OperationBatch:
        """Recursively delete ``target``; a missing target is not an error."""
        return self._add(OpKind.DELETE, target)

    def mkdir(self, target: Path) -> OperationBatch:
        """Create a directory and any missing parents."""
        return self._add(OpKind.MKDIR, target)

    def extract(self, archive: Path, target: Path) -> OperationBatch:
        """Expand a zip archive into ``target``."""
        return self._add(OpKind.EXTRACT, target, archive)

    def __iter__(self) -> Iterator[FileOperation]:
        """Iterate over operations in order."""
        return iter(self.operations)

    def __len__(self) -> int:
        """Return the number of operations."""
        return len(self.operations)

    def __repr__(self) -> str:
        """Return a repr string."""
        return f"OperationBatch({self.description!r}, {len(self)} operations)"


class ScriptAdapter(ABC):
    """Translates an OperationBatch into a script for one platform."""

    suffix: str = ""
    denied_markers: tuple[str, ...] = ()

    @abstractmethod
    def render(self, batch: OperationBatch, sentinel: str, log_path: Path) -> str:
        """Render the batch as a script.

        The script appends its output to ``log_path`` and writes
        ``sentinel`` there only after every operation succeeded.
        """
        ...

    @abstractmethod
    def command(self, script_path: Path) -> list[str]:
        """Build the command that runs the script with elevation."""
        ...

    def is_denied(self, output: str) -> bool:
        """Whether the output says elevation was refused."""
        lowered = output.lower()
        return any(marker in lowered for marker in self.denied_markers)


def ps_quote(value: str | Path) -> str:
    """Quote a value as a PowerShell single-quoted literal.

    Examples:
        >>> ps_quote("C:/it's here")
        "'C:/it''s here'"
    """
    return "'" + str(value).replace("'", "''") + "'"


class PowerShellAdapter(ScriptAdapter):
    """Runs batches through an elevated Windows PowerShell."""

    suffix = ".ps1"
    denied_markers = _WINDOWS_DENIED_MARKERS

    def __init__(self, executable: str = "powershell.exe") -> None:
        """Initialize the adapter.

        Args:
            executable: PowerShell executable to launch.
        """
        self.executable = executable

    def _statement(self, op: FileOperation) -> str:
        target = ps_quote(op.target)
        source = ps_quote(op.source) if op.source is not None else ""
        match op.kind:
            case OpKind.COPY:
                return f"Copy-Item -LiteralPath {source} -Destination {target} -Recurse -Force"
            case OpKind.MOVE:
                return f"Move-Item -LiteralPath {source} -Destination {target} -Force"
            case OpKind.DELETE:
                return (
                    f"if (Test-Path -LiteralPath {target}) "
                    f"{{ Remove-Item -LiteralPath {target} -Recurse -Force }}"
                )
            case OpKind.MKDIR:
                return f"[System.IO.Directory]::CreateDirectory({target}) | Out-Null"
            case OpKind.EXTRACT:
                return f"Expand-Archive -LiteralPath {source} -DestinationPath {target} -Force"
        raise ValueError(f"Unsupported operation: {op.kind}")

    def render(self, batch: OperationBatch, sentinel: str, log_path: Path) -> str:
        """Render the batch as a PowerShell script."""
        log = ps_quote(log_path)
        lines = [
            "$ErrorActionPreference = 'Stop'",
            "$ProgressPreference = 'SilentlyContinue'",
            f"function Write-HubLog($m) {{ Add-Content -LiteralPath {log} -Value $m }}",
            "try {",
        ]
        for op in batch:
            lines.append(f"    Write-HubLog {ps_quote(op.describe())}")
            lines.append(f"    {self._statement(op)}")
        lines += [
            f"    Write-HubLog {ps_quote(sentinel)}",
            "} catch {",
            "    Write-HubLog ('ERROR: ' + $_.Exception.Message)",
            "    exit 1",
            "}",
        ]
        return "\r\n".join(lines) + "\r\n"

    def command(self, script_path: Path) -> list[str]:
        """Build a Start-Process -Verb RunAs launcher for the script."""
        inner_args = ", ".join(
            ps_quote(arg)
            for arg in (
                "-NoProfile",
                "-NonInteractive",
                "-ExecutionPolicy",
                "Bypass",
                "-File",
                f'"{script_path}"',
            )
        )
        launcher = (
            f"$p = Start-Process -FilePath {ps_quote(self.executable)} "
            f"-ArgumentList {inner_args} -Verb RunAs -Wait -PassThru -WindowStyle Hidden; "
            "exit $p.ExitCode"
        )
        return [self.executable, "-NoProfile", "-NonInteractive", "-Command", launcher]


class PosixShellAdapter(ScriptAdapter):
    """Runs batches through ``/bin/sh`` behind an elevation prefix such as sudo."""

    suffix = ".sh"
    denied_markers = _POSIX_DENIED_MARKERS

    def __init__(self, elevation_command: list[str] | None = None, shell: str = "/bin/sh") -> None:
        """Initialize the adapter.

        Args:
            elevation_command: Prefix that elevates the shell. Defaults to
                ``["sudo"]``. An empty list runs the script unelevated.
            shell: Shell used to run the script.
        """
        self.elevation_command = ["sudo"] if elevation_command is None else list(elevation_command)
        self.shell = shell

    def _statement(self, op: FileOperation) -> str:
        target = shlex.quote(str(op.target))
        source = shlex.quote(str(op.source)) if op.source is not None else ""
        match op.kind:
            case OpKind.COPY:
                return f"cp -R -- {source} {target}"
            case OpKind.MOVE:
                return f"mv -f -- {source} {target}"
            case OpKind.DELETE:
                return f"rm -rf -- {target}"
            case OpKind.MKDIR:
                return f"mkdir -p -- {target}"
            case OpKind.EXTRACT:
                return f"unzip -o -q {source} -d {target}"
        raise ValueError(f"Unsupported operation: {op.kind}")

    def render(self, batch: OperationBatch, sentinel: str, log_path: Path) -> str:
        """Render the batch as a POSIX shell script."""
        lines = [
            "#!/bin/sh",
            "set -e",
            f"exec >>{shlex.quote(str(log_path))} 2>&1",
        ]
        for op in batch:
            lines.append(f"echo {shlex.quote(op.describe())}")
            lines.append(self._statement(op))
        lines.append(f"echo {shlex.quote(sentinel)}")
        return "\n".join(lines) + "\n"

    def command(self, script_path: Path) -> list[str]:
        """Build the elevated shell command."""
        return [*self.elevation_command, self.shell, str(script_path)]


class PrivilegedExecutor(BatchExecutor):
    """Runs operation batches elevated, one prompt per batch."""

    def __init__(
        self,
        adapter: ScriptAdapter,
        timeout: float = 300.0,
        work_dir: Path | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            adapter: Platform script adapter.
            timeout: Seconds to wait for the elevated script.
            work_dir: Where scripts and logs are written (system temp if None).
        """
        self.adapter = adapter
        self.timeout = timeout
        self.work_dir = work_dir
        self._log = logger.bind(component="privileged_executor")

    async def run_elevated(self, batch: OperationBatch) -> str:
        """Run the batch behind a single elevation prompt.

        Args:
            batch: Operations to apply.

        Returns:
            Output collected from the script.

        Raises:
            ElevationDeniedError: If the operator refused elevation.
            ExecutionFailedError: If the script failed, timed out or never
                wrote its sentinel.
        """
        if not batch.operations:
            return ""

        log = self._log.bind(batch=batch.description, operations=len(batch))
        sentinel = f"HUB-BATCH-OK-{uuid.uuid4().hex}"
        scratch = Path(tempfile.mkdtemp(prefix="hub-elevate-", dir=self.work_dir))

        try:
            script_path = scratch / f"batch{self.adapter.suffix}"
            log_path = scratch / "batch.log"
            log_path.touch()
            script_path.write_text(self.adapter.render(batch, sentinel, log_path), encoding="utf-8")

            command = self.adapter.command(script_path)
            log.info("elevated_batch_started")

            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise ExecutionFailedError(f"Could not start {command[0]}: {e}") from e

            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
                output = self._read_log(log_path)
                log.error("elevated_batch_timeout", timeout=self.timeout)
                raise ExecutionFailedError(
                    f"Privileged operation timed out after {self.timeout:.0f}s", output=output
                ) from None

            output = "\n".join(
                part
                for part in (
                    stdout.decode("utf-8", errors="replace").strip(),
                    stderr.decode("utf-8", errors="replace").strip(),
                    self._read_log(log_path).strip(),
                )
                if part
            )

            if sentinel in output:
                log.info("elevated_batch_completed", exit_code=process.returncode)
                return output.replace(sentinel, "").strip()

            if self.adapter.is_denied(output):
                log.warning("elevation_denied", exit_code=process.returncode)
                raise ElevationDeniedError("Administrator privileges were not granted", output=output)

            log.error("elevated_batch_failed", exit_code=process.returncode, output=output[-500:])
            raise ExecutionFailedError(
                f"Privileged operation did not complete (exit code {process.returncode})",
                output=output,
                exit_code=process.returncode,
            )
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    @staticmethod
    def _read_log(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace").lstrip("\ufeff")
        except OSError:
            return ""


class LocalExecutor(BatchExecutor):
    """Applies operation batches in-process, without elevation."""

    def __init__(self) -> None:
        """Initialize the executor."""
        self._log = logger.bind(component="local_executor")

    async def run_elevated(self, batch: OperationBatch) -> str:
        """Apply the batch directly.

        Raises:
            ExecutionFailedError: If any operation fails; the output lists
                the operations that completed before it.
        """
        if not batch.operations:
            return ""
        return await asyncio.to_thread(self._apply, batch)

    def _apply(self, batch: OperationBatch) -> str:
        done: list[str] = []
        for op in batch:
            try:
                self._apply_one(op)
            except (OSError, ValueError, MalformedArchiveError) as e:
                self._log.error("local_batch_failed", batch=batch.description, operation=op.describe(), error=str(e))
                raise ExecutionFailedError(
                    f"{op.describe()} failed: {e}", output="\n".join(done)
                ) from e
            done.append(op.describe())
        self._log.info("local_batch_completed", batch=batch.description, operations=len(batch))
        return "\n".join(done)

    @staticmethod
    def _apply_one(op: FileOperation) -> None:
        source = op.source
        if source is None and op.kind in (OpKind.COPY, OpKind.MOVE, OpKind.EXTRACT):
            raise ValueError(f"{op.kind.value} needs a source path: {op.target}")
        match op.kind:
            case OpKind.COPY:
                if source.is_dir():
                    shutil.copytree(source, op.target, dirs_exist_ok=True)
                else:
                    shutil.copy2(source, op.target)
            case OpKind.MOVE:
                shutil.move(str(source), str(op.target))
            case OpKind.DELETE:
                if op.target.is_dir() and not op.target.is_symlink():
                    shutil.rmtree(op.target)
                else:
                    op.target.unlink(missing_ok=True)
            case OpKind.MKDIR:
                op.target.mkdir(parents=True, exist_ok=True)
            case OpKind.EXTRACT:
                safe_extract_zip(source, op.target)


def is_protected_path(path: Path) -> bool:
    """Check if a path lies under a Windows protected location."""
    path_str = str(path).replace("/", "\\").upper()
    return any(path_str.startswith(protected) for protected in WINDOWS_PROTECTED_PATHS)


def has_write_access(path: Path) -> bool:
    """Check whether the current user can write to ``path``.

    The nearest existing ancestor is tested by creating and removing a
    scratch file in it.
    """
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    if not existing.is_dir():
        existing = existing.parent

    try:
        fd, name = tempfile.mkstemp(prefix=".hub-write-test-", dir=existing)
        os.close(fd)
        os.unlink(name)
    except OSError as e:
        logger.debug("write_test_failed", path=str(existing), error=str(e))
        return False
    return True


def needs_elevation(path: Path) -> bool:
    """Decide whether changing ``path`` requires elevated privileges."""
    if sys.platform == "win32" and is_protected_path(path):
        return True
    return not has_write_access(path)


def default_adapter(config: HubConfig) -> ScriptAdapter:
    """Return the script adapter for this platform."""
    if sys.platform == "win32":
        return PowerShellAdapter()
    return PosixShellAdapter(elevation_command=config.elevation_command)


def create_executor(config: HubConfig, target: Path) -> BatchExecutor:
    """Pick an executor for changes under ``target``.

    Args:
        config: Hub configuration.
        target: Directory that will be modified.

    Returns:
        A LocalExecutor if ``target`` is writable, otherwise a PrivilegedExecutor.
    """
    if needs_elevation(target):
        logger.debug("elevation_required", path=str(target))
        return PrivilegedExecutor(default_adapter(config), timeout=config.elevation_timeout_seconds)
    return LocalExecutor()
