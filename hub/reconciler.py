"""Plugin install/update state machine.

The reconciler answers "is this plugin installed, at what version, is an
update available" and drives install, update and uninstall to completion.
Each public operation:

- holds the plugin's single-flight key for its whole duration
- reports progress as StatusEvents on the supplied sink
- ends with exactly one terminal event, which it also returns
- never raises; every failure becomes a ``failed`` event

Local state is re-derived from the filesystem on every call. A plugin is
either a directory ``<root>/<name>/`` holding its payload and
``version.json``, or a flat ``<root>/<name>.dll`` with a
``<name>.version.json`` sidecar. The two layouts are never left side by
side; installing one removes the other.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .elevation import OperationBatch, create_executor
from .errors import HostBusyError, HostNotConfiguredError, HubError, ReleaseNotFoundError
from .extractor import BinaryVersionReader, read_metadata_file, resolve_remote_version
from .models import (
    ArtifactKind,
    InstallRecord,
    NotAvailableReason,
    OperationRequest,
    OperationStatus,
    StatusReport,
    VersionSource,
)
from .mutex import SingleFlightGuard
from .streaming import StatusEvent
from .version import normalize_version, update_available

if TYPE_CHECKING:
    from .host import HostLocator
    from .interfaces import BatchExecutor, EventSink
    from .models import HubConfig, PluginDescriptor
    from .process import ProcessGuard
    from .releases import ReleaseClient
    from .settings import SettingsStore
    from .staging import ArtifactStager, StagedPayload

logger = structlog.get_logger(__name__)

INSTALL_LOG_DIR = "install-logs"


class InstallReconciler:
    """Reconciles local plugin installs with their latest releases."""

    def __init__(
        self,
        config: HubConfig,
        host_locator: HostLocator,
        process_guard: ProcessGuard,
        release_client: ReleaseClient,
        stager: ArtifactStager,
        settings: SettingsStore,
        *,
        data_dir: Path,
        sink: EventSink | None = None,
        executor_factory: Callable[[Path], BatchExecutor] | None = None,
        binary_reader: BinaryVersionReader | None = None,
        guard: SingleFlightGuard | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Hub configuration.
            host_locator: Resolves the plugin root.
            process_guard: Detects a running host.
            release_client: Fetches remote release information.
            stager: Downloads and stages assets.
            settings: Holds fallback versions of flat-file plugins.
            data_dir: Private data directory for install logs.
            sink: Default event sink; each call may supply its own.
            executor_factory: Returns the executor for changes under a
                plugin root. Defaults to create_executor().
            binary_reader: Reads file-version resources of binaries.
            guard: Single-flight guard keyed by plugin name.
        """
        self.config = config
        self.host_locator = host_locator
        self.process_guard = process_guard
        self.release_client = release_client
        self.stager = stager
        self.settings = settings
        self.data_dir = data_dir
        self.sink = sink
        self.executor_factory = executor_factory or (lambda target: create_executor(config, target))
        self.binary_reader = binary_reader or BinaryVersionReader(
            timeout=config.process_check_timeout_seconds
        )
        self.guard = guard or SingleFlightGuard(config.single_flight_timeout_seconds)
        self._log = logger.bind(component="reconciler")

    # Paths

    def directory_path(self, root: Path, name: str) -> Path:
        """Install path of a directory-layout plugin."""
        return root / name

    def flat_paths(self, root: Path, name: str) -> list[Path]:
        """Candidate install paths of a flat-file plugin, one per binary extension."""
        return [root / f"{name}{ext}" for ext in self.config.binary_extensions]

    def sidecar_path(self, root: Path, name: str) -> Path:
        """Sidecar metadata path of a flat-file plugin."""
        return root / f"{name}{self.config.sidecar_suffix}"

    def install_log_path(self, name: str) -> Path:
        """Install log file of a plugin."""
        return self.data_dir / INSTALL_LOG_DIR / f"{name}.log"

    def _find_metadata(self, directory: Path) -> Path | None:
        names = {n.lower() for n in self.config.metadata_filenames}
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name.lower())
        except OSError:
            return None
        return next((e for e in entries if e.is_file() and e.name.lower() in names), None)

    def _find_binary(self, directory: Path, name: str) -> Path | None:
        for candidate in self.flat_paths(directory, name):
            if candidate.is_file():
                return candidate
        exts = tuple(ext.lower() for ext in self.config.binary_extensions)
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name.lower())
        except OSError:
            return None
        return next((e for e in entries if e.is_file() and e.name.lower().endswith(exts)), None)

    # Local state

    async def inspect(
        self,
        descriptor: PluginDescriptor | str,
        plugin_root: Path | None = None,
        kind: ArtifactKind | None = None,
    ) -> InstallRecord:
        """Derive the local install record from the filesystem.

        Args:
            descriptor: Plugin to inspect, or just its name.
            plugin_root: Plugin root; resolved through the host locator if None.
            kind: Layout to look for; defaults to the descriptor's kind, and
                to whichever layout exists when neither is set.

        Returns:
            The install record. A plugin with nothing on disk, or with no
            resolvable plugin root, is reported as not installed.
        """
        root = plugin_root or self.host_locator.plugin_root()
        if root is None:
            return InstallRecord.missing()

        if isinstance(descriptor, str):
            name = descriptor
        else:
            name = descriptor.name
            kind = kind or descriptor.artifact_kind
        directory = self.directory_path(root, name)
        flat = next((p for p in self.flat_paths(root, name) if p.is_file()), None)

        if kind is None:
            if directory.is_dir() and flat is not None:
                self._log.warning("plugin_layout_mixed", plugin=name, directory=str(directory), file=str(flat))
            kind = ArtifactKind.ARCHIVE if directory.is_dir() else ArtifactKind.FILE

        if kind == ArtifactKind.ARCHIVE:
            return await self._inspect_directory(name, directory)
        return await self._inspect_flat(name, root, flat)

    async def _inspect_directory(self, name: str, directory: Path) -> InstallRecord:
        if not directory.is_dir():
            return InstallRecord.missing()

        record = InstallRecord(installed=True, install_path=directory, layout=ArtifactKind.ARCHIVE)

        metadata = self._find_metadata(directory)
        if metadata is not None:
            version = read_metadata_file(metadata)
            if version is not None:
                record.installed_version = version
                record.version_source = VersionSource.METADATA
                return record

        binary = self._find_binary(directory, name)
        if binary is not None:
            version = await self.binary_reader.read(binary)
            if version is not None:
                record.installed_version = version
                record.version_source = VersionSource.BINARY

        # Directory installs never fall back to the persisted version.
        return record

    async def _inspect_flat(self, name: str, root: Path, flat: Path | None) -> InstallRecord:
        if flat is None:
            return InstallRecord.missing()

        sidecar = self.sidecar_path(root, name)
        record = InstallRecord(
            installed=True,
            install_path=flat,
            layout=ArtifactKind.FILE,
            extra_paths=[sidecar] if sidecar.exists() else [],
        )

        if sidecar.is_file():
            version = read_metadata_file(sidecar)
            if version is not None:
                record.installed_version = version
                record.version_source = VersionSource.METADATA
                return record

        version = await self.binary_reader.read(flat)
        if version is not None:
            record.installed_version = version
            record.version_source = VersionSource.BINARY
            return record

        fallback = normalize_version(self.settings.get_fallback_version(name))
        if fallback is not None:
            record.installed_version = fallback
            record.version_source = VersionSource.FALLBACK
        return record

    # Plumbing

    def _emit(self, sink: EventSink | None, event: StatusEvent) -> None:
        target = sink or self.sink
        if target is not None:
            target.emit(event)

    async def _guarded(
        self,
        name: str,
        operation: str,
        sink: EventSink | None,
        body: Callable[[], Awaitable[StatusEvent]],
    ) -> StatusEvent:
        log = self._log.bind(plugin=name, operation=operation)
        try:
            async with self.guard.hold(name, holder=operation):
                event = await body()
        except HostBusyError as e:
            log.info("host_running", process=e.process_name)
            event = StatusEvent(name, OperationStatus.RUNNING, reason=NotAvailableReason.HOST_RUNNING, message=str(e))
        except HostNotConfiguredError as e:
            event = StatusEvent(
                name, OperationStatus.NOT_AVAILABLE, reason=NotAvailableReason.HOST_NOT_CONFIGURED, message=str(e)
            )
        except HubError as e:
            log.error("operation_failed", error=str(e), error_type=type(e).__name__)
            event = StatusEvent(name, OperationStatus.FAILED, error=str(e))
        except (OSError, ValueError) as e:
            log.error("operation_failed", error=str(e), error_type=type(e).__name__)
            event = StatusEvent(name, OperationStatus.FAILED, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            log.exception("operation_failed", error=str(e), error_type=type(e).__name__)
            event = StatusEvent(name, OperationStatus.FAILED, error=f"Unexpected error: {type(e).__name__}: {e}")

        self._emit(sink, event)
        log.info("operation_finished", status=event.status.value, version=event.version, error=event.error)
        return event

    async def _require_host(self) -> Path:
        """Return the plugin root.

        Raises:
            HostBusyError: If the host process is running.
            HostNotConfiguredError: If the host location cannot be resolved.
        """
        host = self.config.host_process_name
        if await self.process_guard.is_running(host):
            raise HostBusyError(host)

        root = self.host_locator.plugin_root()
        if root is None:
            raise HostNotConfiguredError(f"{self.config.host_name} location is not set")
        return root

    # Check

    async def check(self, descriptor: PluginDescriptor, sink: EventSink | None = None) -> StatusReport:
        """Report install state and update availability of a plugin.

        Emits ``checking`` followed by one terminal event.

        Args:
            descriptor: Plugin to check.
            sink: Event sink for this call.

        Returns:
            The status report; its status matches the terminal event.
        """
        report = StatusReport(plugin_name=descriptor.name, status=OperationStatus.CHECKING)

        async def body() -> StatusEvent:
            nonlocal report
            self._emit(sink, StatusEvent(descriptor.name, OperationStatus.CHECKING))
            report = await self._check_unlocked(descriptor)
            return self._report_event(report)

        event = await self._guarded(descriptor.name, "check", sink, body)
        if event.status != report.status:
            report.status = event.status
            report.reason = event.reason
            report.message = event.error or event.message
        return report

    async def _check_unlocked(self, descriptor: PluginDescriptor) -> StatusReport:
        name = descriptor.name
        try:
            root = await self._require_host()
        except HostBusyError as e:
            return StatusReport(
                plugin_name=name,
                status=OperationStatus.NOT_AVAILABLE,
                reason=NotAvailableReason.HOST_RUNNING,
                message=str(e),
            )
        except HostNotConfiguredError as e:
            return StatusReport(
                plugin_name=name,
                status=OperationStatus.NOT_AVAILABLE,
                reason=NotAvailableReason.HOST_NOT_CONFIGURED,
                message=str(e),
            )

        record = await self.inspect(descriptor, root)

        try:
            release = await self.release_client.latest_release(descriptor.source_repository)
        except ReleaseNotFoundError as e:
            return StatusReport(
                plugin_name=name,
                status=OperationStatus.NOT_AVAILABLE,
                record=record,
                reason=NotAvailableReason.RELEASE_UNAVAILABLE,
                message=str(e),
            )

        remote = resolve_remote_version(release)
        report = StatusReport(
            plugin_name=name,
            status=OperationStatus.UP_TO_DATE,
            record=record,
            remote_version=remote,
            release=release,
        )

        if not record.installed:
            if not release.has_asset:
                report.status = OperationStatus.NOT_AVAILABLE
                report.reason = NotAvailableReason.RELEASE_UNAVAILABLE
                report.message = "Latest release has no installable asset"
            else:
                report.status = OperationStatus.NOT_INSTALLED
            return report

        report.update_available = release.has_asset and update_available(record.installed_version, remote)
        if report.update_available:
            report.status = OperationStatus.UPDATE_AVAILABLE
        return report

    @staticmethod
    def _report_event(report: StatusReport) -> StatusEvent:
        return StatusEvent(
            report.plugin_name,
            report.status,
            version=report.record.installed_version,
            reason=report.reason,
            message=report.message,
        )

    # Install

    async def install(
        self,
        request: OperationRequest,
        sink: EventSink | None = None,
        descriptor: PluginDescriptor | None = None,
    ) -> StatusEvent:
        """Install (or reinstall) a plugin from a release asset.

        Emits ``checking``, ``downloading`` progress, ``installing`` and one
        terminal event: ``done`` with the version found on disk afterwards,
        ``running`` if the host is busy, ``not_available`` if the host is
        not configured, or ``failed``.

        Args:
            request: What to install and from where.
            sink: Event sink for this call.
            descriptor: Catalogue entry for the plugin, if known.

        Returns:
            The terminal event.
        """

        async def body() -> StatusEvent:
            self._emit(sink, StatusEvent(request.plugin_name, OperationStatus.CHECKING))
            root = await self._require_host()
            return await self._install_unlocked(request, root, sink, descriptor)

        return await self._guarded(request.plugin_name, "install", sink, body)

    def _resolve_kind(self, request: OperationRequest, descriptor: PluginDescriptor | None) -> ArtifactKind:
        kind = (
            request.artifact_kind
            or ArtifactKind.from_filename(
                request.download_url, self.config.archive_extensions, self.config.binary_extensions
            )
            or (descriptor.artifact_kind if descriptor else None)
        )
        if kind is None:
            raise HubError(f"Cannot tell whether {request.download_url} is an archive or a binary")
        return kind

    async def _install_unlocked(
        self,
        request: OperationRequest,
        root: Path,
        sink: EventSink | None,
        descriptor: PluginDescriptor | None,
    ) -> StatusEvent:
        name = request.plugin_name
        kind = self._resolve_kind(request, descriptor)
        log = self._log.bind(plugin=name, kind=kind.value, url=request.download_url)

        def on_progress(transferred: int, percent: float | None) -> None:
            self._emit(sink, StatusEvent(name, OperationStatus.DOWNLOADING, bytes=transferred, percent=percent))

        self._emit(sink, StatusEvent(name, OperationStatus.DOWNLOADING, bytes=0, percent=0.0))
        log.info("plugin_download_started")

        staged = await self.stager.prepare(request.download_url, kind, name, on_progress)
        async with staged:
            self._emit(sink, StatusEvent(name, OperationStatus.INSTALLING))
            batch = await self._build_install_batch(name, root, staged, request.version)
            output = await self.executor_factory(root).run_elevated(batch)
            log.debug("install_batch_output", output=output[-500:])

        record = await self.inspect(name, root, kind)
        if not record.installed:
            raise HubError(f"{name} was not found at its install location after placement")

        self._persist(name, kind, record)
        return StatusEvent(
            name,
            OperationStatus.DONE,
            version=record.installed_version,
            message=None if record.installed_version else "Installed; version could not be determined",
        )

    async def _build_install_batch(
        self,
        name: str,
        root: Path,
        staged: StagedPayload,
        requested_version: str | None,
    ) -> OperationBatch:
        directory = self.directory_path(root, name)
        sidecar = self.sidecar_path(root, name)

        batch = OperationBatch(f"install {name}").mkdir(root).delete(directory)
        for flat in self.flat_paths(root, name):
            batch.delete(flat)
        batch.delete(sidecar)

        if staged.kind == ArtifactKind.ARCHIVE:
            return batch.copy(staged.path, directory)

        ext = staged.path.suffix.lower() or self.config.binary_extensions[0]
        batch.copy(staged.path, root / f"{name}{ext}")

        version = await self.binary_reader.read(staged.path) or normalize_version(requested_version)
        if version is not None:
            staged_sidecar = staged.work_dir / sidecar.name
            staged_sidecar.write_text(json.dumps({"version": version}), encoding="utf-8")
            batch.copy(staged_sidecar, sidecar)
        return batch

    def _persist(self, name: str, kind: ArtifactKind, record: InstallRecord) -> None:
        if kind == ArtifactKind.FILE and record.installed_version is not None:
            self.settings.set_fallback_version(name, record.installed_version)
        elif kind == ArtifactKind.ARCHIVE:
            self.settings.clear_fallback_version(name)

        log_path = self.install_log_path(name)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            f.write(f"Installed version: {record.installed_version or 'unknown'}\n")
            f.write(f"Installed at: {datetime.now(tz=UTC).isoformat()}\n")

    # Update

    async def update(self, descriptor: PluginDescriptor, sink: EventSink | None = None) -> StatusEvent:
        """Install the latest release if the plugin is missing or outdated.

        Emits ``checking``; if nothing needs doing, the check's terminal
        event ends the operation, otherwise the install events follow.

        Args:
            descriptor: Plugin to update.
            sink: Event sink for this call.

        Returns:
            The terminal event.
        """

        async def body() -> StatusEvent:
            self._emit(sink, StatusEvent(descriptor.name, OperationStatus.CHECKING))
            report = await self._check_unlocked(descriptor)
            needs_install = report.status in (OperationStatus.NOT_INSTALLED, OperationStatus.UPDATE_AVAILABLE)
            if not needs_install or report.release is None or report.release.asset_url is None:
                return self._report_event(report)

            request = OperationRequest(
                plugin_name=descriptor.name,
                download_url=report.release.asset_url,
                version=report.remote_version,
                artifact_kind=report.release.asset_kind or descriptor.artifact_kind,
            )
            # The host may have started since the check.
            root = await self._require_host()
            return await self._install_unlocked(request, root, sink, descriptor)

        return await self._guarded(descriptor.name, "update", sink, body)

    # Uninstall

    async def uninstall(self, descriptor: PluginDescriptor, sink: EventSink | None = None) -> StatusEvent:
        """Remove a plugin.

        Success means nothing of the plugin is left on disk afterwards,
        which is verified rather than assumed.

        Args:
            descriptor: Plugin to remove.
            sink: Event sink for this call.

        Returns:
            The terminal event.
        """
        name = descriptor.name

        async def body() -> StatusEvent:
            root = await self._require_host()
            self._emit(sink, StatusEvent(name, OperationStatus.UNINSTALLING))

            targets = [self.directory_path(root, name), *self.flat_paths(root, name), self.sidecar_path(root, name)]
            present = [p for p in targets if p.exists() or p.is_symlink()]

            if present:
                batch = OperationBatch(f"uninstall {name}")
                for path in present:
                    batch.delete(path)
                await self.executor_factory(root).run_elevated(batch)

            remaining = [p for p in present if p.exists() or p.is_symlink()]
            if remaining:
                raise HubError(f"Could not remove {', '.join(str(p) for p in remaining)}")

            self.settings.clear_fallback_version(name)
            return StatusEvent(
                name,
                OperationStatus.DONE,
                message=None if present else "Plugin was not installed",
            )

        return await self._guarded(name, "uninstall", sink, body)

