"""Tests for the install/update/uninstall state machine."""

from __future__ import annotations

import asyncio
import io
import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from hub.elevation import LocalExecutor
from hub.errors import (
    ElevationDeniedError,
    HostBusyError,
    HostNotConfiguredError,
    NetworkError,
    ReleaseNotFoundError,
)
from hub.host import HostLocator
from hub.interfaces import BatchExecutor
from hub.models import (
    ArtifactKind,
    DownloadResult,
    HubConfig,
    NotAvailableReason,
    OperationRequest,
    OperationStatus,
    PluginDescriptor,
    ReleaseInfo,
    VersionSource,
)
from hub.reconciler import InstallReconciler
from hub.settings import SettingsStore
from hub.staging import ArtifactStager
from hub.streaming import EventCollector

if TYPE_CHECKING:
    from collections.abc import Callable

    from hub.elevation import OperationBatch

ZIP_URL = "https://github.com/vatacars/vatsys-plugin/releases/download/v1.2.0/vatACARS.zip"
DLL_URL = "https://github.com/maxrumsey/OzStrips/releases/download/v2.0/OzStrips.dll"

VATACARS = PluginDescriptor(name="vatACARS", source_repository="vatacars/vatsys-plugin")
OZSTRIPS = PluginDescriptor(name="OzStrips", source_repository="maxrumsey/OzStrips")


def build_zip(files: dict[str, bytes]) -> bytes:
    """Build an in-memory zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def with_compression_method(data: bytes, method: int) -> bytes:
    """Rewrite the compression method recorded for every member of a stored zip."""
    buffer = bytearray(data)
    for signature, offset in ((b"PK\x03\x04", 8), (b"PK\x01\x02", 10)):
        start = buffer.find(signature)
        while start != -1:
            buffer[start + offset : start + offset + 2] = method.to_bytes(2, "little")
            start = buffer.find(signature, start + 4)
    return bytes(buffer)


VATACARS_ZIP = build_zip(
    {
        "vatACARS/vatACARS.dll": b"MZ-new",
        "vatACARS/version.json": b'{"version": "1.2.0"}',
        "vatACARS/Sounds/ding.wav": b"RIFF",
    }
)


class FakeProcessGuard:
    """Process guard with a switchable answer."""

    def __init__(self, running: bool = False) -> None:
        self.running = running

    async def is_running(self, name: str | None = None) -> bool:
        return self.running


class FakeReleaseClient:
    """Release client answering from a dict of repository to release or error."""

    def __init__(self, releases: dict[str, ReleaseInfo | Exception]) -> None:
        self.releases = releases
        self.calls: list[str] = []

    async def latest_release(self, repository: str) -> ReleaseInfo:
        self.calls.append(repository)
        value = self.releases.get(repository)
        if value is None:
            raise ReleaseNotFoundError(f"No published release for {repository}", status=404)
        if isinstance(value, Exception):
            raise value
        return value


class FakeDownloadManager:
    """Serves canned bodies keyed by URL."""

    def __init__(self, bodies: dict[str, bytes]) -> None:
        self.bodies = bodies
        self.requested: list[str] = []

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: Callable[[int, float | None], None] | None = None,
    ) -> DownloadResult:
        self.requested.append(url)
        if url not in self.bodies:
            raise NetworkError(f"File not found: {url}", status=404)
        data = self.bodies[url]
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        if on_progress is not None:
            on_progress(len(data), 100.0)
        return DownloadResult(path=destination, bytes_downloaded=len(data), bytes_total=len(data))


class FakeBinaryReader:
    """Binary reader answering from a dict of file name to version."""

    def __init__(self, versions: dict[str, str] | None = None) -> None:
        self.versions = versions or {}

    async def read(self, path: Path) -> str | None:
        return self.versions.get(path.name)


class DenyingExecutor(BatchExecutor):
    """Executor whose elevation prompt is always refused."""

    async def run_elevated(self, batch: OperationBatch) -> str:
        raise ElevationDeniedError("Administrator privileges were not granted")


class CrashingExecutor(BatchExecutor):
    """Executor that fails with an error outside the hub taxonomy."""

    async def run_elevated(self, batch: OperationBatch) -> str:
        raise RuntimeError("executor crashed")


class NoopExecutor(BatchExecutor):
    """Executor that claims success without touching anything."""

    async def run_elevated(self, batch: OperationBatch) -> str:
        return ""


@dataclass
class Harness:
    """A reconciler wired to fakes, plus handles on the fakes."""

    reconciler: InstallReconciler
    root: Path
    settings: SettingsStore
    processes: FakeProcessGuard
    releases: FakeReleaseClient
    downloads: FakeDownloadManager
    binaries: FakeBinaryReader
    events: EventCollector = field(default_factory=EventCollector)

    def terminal_events(self, name: str) -> list:
        return [e for e in self.events.for_plugin(name) if e.is_terminal]


@pytest.fixture
def harness(config: HubConfig, settings: SettingsStore, host_dir: Path, tmp_path: Path) -> Harness:
    """A reconciler with vatSys configured and both test plugins released."""
    settings.set_host_location(host_dir)

    releases = FakeReleaseClient(
        {
            VATACARS.source_repository: ReleaseInfo(
                tag_version="v1.2.0",
                asset_url=ZIP_URL,
                asset_name="vatACARS.zip",
                asset_kind=ArtifactKind.ARCHIVE,
            ),
            OZSTRIPS.source_repository: ReleaseInfo(
                tag_version="latest",
                title="OzStrips v2.0",
                asset_url=DLL_URL,
                asset_name="OzStrips.dll",
                asset_kind=ArtifactKind.FILE,
            ),
        }
    )
    downloads = FakeDownloadManager({ZIP_URL: VATACARS_ZIP, DLL_URL: b"MZ-strips"})
    processes = FakeProcessGuard()
    binaries = FakeBinaryReader()
    events = EventCollector()

    reconciler = InstallReconciler(
        config,
        HostLocator(config, settings),
        processes,  # type: ignore[arg-type]
        releases,  # type: ignore[arg-type]
        ArtifactStager(downloads, config),  # type: ignore[arg-type]
        settings,
        data_dir=tmp_path / "data",
        sink=events,
        executor_factory=lambda root: LocalExecutor(),
        binary_reader=binaries,  # type: ignore[arg-type]
    )
    return Harness(
        reconciler=reconciler,
        root=host_dir / "Plugins",
        settings=settings,
        processes=processes,
        releases=releases,
        downloads=downloads,
        binaries=binaries,
        events=events,
    )


def install_directory_plugin(root: Path, name: str, version: str | None) -> Path:
    directory = root / name
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{name}.dll").write_bytes(b"MZ-old")
    if version is not None:
        (directory / "version.json").write_text(json.dumps({"version": version}), encoding="utf-8")
    return directory


class TestInspect:
    """Tests for deriving local state from disk."""

    @pytest.mark.asyncio
    async def test_not_installed(self, harness: Harness) -> None:
        """Nothing on disk means not installed."""
        record = await harness.reconciler.inspect(VATACARS)
        assert record.installed is False
        assert record.installed_version is None

    @pytest.mark.asyncio
    async def test_directory_metadata(self, harness: Harness) -> None:
        """Directory installs read version.json first."""
        install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        record = await harness.reconciler.inspect(VATACARS)

        assert record.installed
        assert record.layout == ArtifactKind.ARCHIVE
        assert record.installed_version == "1.1.0"
        assert record.version_source == VersionSource.METADATA

    @pytest.mark.asyncio
    async def test_directory_binary_fallback(self, harness: Harness) -> None:
        """Without metadata the binary's file version is used."""
        install_directory_plugin(harness.root, "vatACARS", None)
        harness.binaries.versions["vatACARS.dll"] = "1.0.5"

        record = await harness.reconciler.inspect(VATACARS)
        assert record.installed_version == "1.0.5"
        assert record.version_source == VersionSource.BINARY

    @pytest.mark.asyncio
    async def test_directory_ignores_persisted_version(self, harness: Harness) -> None:
        """Directory installs never use the settings fallback."""
        install_directory_plugin(harness.root, "vatACARS", None)
        harness.settings.set_fallback_version("vatACARS", "9.9.9")

        record = await harness.reconciler.inspect(VATACARS)
        assert record.installed
        assert record.installed_version is None

    @pytest.mark.asyncio
    async def test_flat_sidecar(self, harness: Harness) -> None:
        """Flat installs read their sidecar first."""
        (harness.root / "OzStrips.dll").write_bytes(b"MZ")
        (harness.root / "OzStrips.version.json").write_text('{"Major": 2, "Minor": 1}', encoding="utf-8")

        record = await harness.reconciler.inspect(OZSTRIPS)
        assert record.layout == ArtifactKind.FILE
        assert record.installed_version == "2.1.0"
        assert record.extra_paths == [harness.root / "OzStrips.version.json"]

    @pytest.mark.asyncio
    async def test_flat_persisted_fallback(self, harness: Harness) -> None:
        """Flat installs fall back to the persisted version last."""
        (harness.root / "OzStrips.dll").write_bytes(b"MZ")
        harness.settings.set_fallback_version("OzStrips", "1.5")

        record = await harness.reconciler.inspect(OZSTRIPS)
        assert record.installed_version == "1.5.0"
        assert record.version_source == VersionSource.FALLBACK

    @pytest.mark.asyncio
    async def test_mixed_layout_prefers_directory(self, harness: Harness) -> None:
        """When both layouts exist, the directory wins."""
        install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        (harness.root / "vatACARS.dll").write_bytes(b"MZ")

        record = await harness.reconciler.inspect("vatACARS")
        assert record.layout == ArtifactKind.ARCHIVE


class TestCheck:
    """Tests for status checks."""

    @pytest.mark.asyncio
    async def test_not_installed(self, harness: Harness) -> None:
        """A released plugin with nothing on disk is not installed."""
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.NOT_INSTALLED
        assert report.remote_version == "1.2.0"
        assert harness.events.statuses == [OperationStatus.CHECKING, OperationStatus.NOT_INSTALLED]

    @pytest.mark.asyncio
    async def test_update_available(self, harness: Harness) -> None:
        """An older install has an update."""
        install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.UPDATE_AVAILABLE
        assert report.update_available is True
        assert harness.events.last is not None and harness.events.last.version == "1.1.0"

    @pytest.mark.asyncio
    async def test_up_to_date(self, harness: Harness) -> None:
        """The same version is up to date."""
        install_directory_plugin(harness.root, "vatACARS", "1.2.0")
        assert (await harness.reconciler.check(VATACARS)).status == OperationStatus.UP_TO_DATE

    @pytest.mark.asyncio
    async def test_remote_version_from_title(self, harness: Harness) -> None:
        """A non-semver tag falls back to the release title."""
        (harness.root / "OzStrips.dll").write_bytes(b"MZ")
        harness.settings.set_fallback_version("OzStrips", "1.9.0")

        report = await harness.reconciler.check(OZSTRIPS)
        assert report.remote_version == "2.0.0"
        assert report.status == OperationStatus.UPDATE_AVAILABLE

    @pytest.mark.asyncio
    async def test_unknown_local_version_no_update(self, harness: Harness) -> None:
        """An install with no readable version never reports an update."""
        install_directory_plugin(harness.root, "vatACARS", None)
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.UP_TO_DATE
        assert report.update_available is False

    @pytest.mark.asyncio
    async def test_host_not_configured(self, harness: Harness) -> None:
        """Without a host location the plugin is not available."""
        harness.settings.clear_host_location()
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.NOT_AVAILABLE
        assert report.reason == NotAvailableReason.HOST_NOT_CONFIGURED
        assert harness.releases.calls == []

    @pytest.mark.asyncio
    async def test_host_running(self, harness: Harness) -> None:
        """A running host makes the check unavailable."""
        harness.processes.running = True
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.NOT_AVAILABLE
        assert report.reason == NotAvailableReason.HOST_RUNNING

    @pytest.mark.asyncio
    async def test_no_release(self, harness: Harness) -> None:
        """A repository without releases is not available."""
        del harness.releases.releases[VATACARS.source_repository]
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.NOT_AVAILABLE
        assert report.reason == NotAvailableReason.RELEASE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_release_without_asset(self, harness: Harness) -> None:
        """A release with nothing to install cannot be installed."""
        harness.releases.releases[VATACARS.source_repository] = ReleaseInfo(tag_version="v1.3.0")
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.NOT_AVAILABLE
        assert report.reason == NotAvailableReason.RELEASE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_network_error_fails(self, harness: Harness) -> None:
        """Network errors end the check as failed."""
        harness.releases.releases[VATACARS.source_repository] = NetworkError("HTTP error 403: Forbidden", status=403)
        report = await harness.reconciler.check(VATACARS)

        assert report.status == OperationStatus.FAILED
        assert harness.events.last is not None and "403" in (harness.events.last.error or "")


class TestInstall:
    """Tests for installs."""

    @pytest.mark.asyncio
    async def test_install_archive(self, harness: Harness) -> None:
        """An archive is staged, copied into its directory and verified."""
        (harness.root / "vatACARS.dll").write_bytes(b"MZ-flat")
        harness.settings.set_fallback_version("vatACARS", "0.9.0")

        request = OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL)
        event = await harness.reconciler.install(request)

        assert event.status == OperationStatus.DONE
        assert event.version == "1.2.0"
        assert harness.events.statuses == [
            OperationStatus.CHECKING,
            OperationStatus.DOWNLOADING,
            OperationStatus.DOWNLOADING,
            OperationStatus.INSTALLING,
            OperationStatus.DONE,
        ]
        assert harness.events.events[1].percent == 0.0
        assert harness.events.events[2].percent == 100.0

        directory = harness.root / "vatACARS"
        assert (directory / "vatACARS.dll").read_bytes() == b"MZ-new"
        assert (directory / "Sounds" / "ding.wav").exists()
        assert not (harness.root / "vatACARS.dll").exists()
        assert harness.settings.get_fallback_version("vatACARS") is None

        log = harness.reconciler.install_log_path("vatACARS").read_text(encoding="utf-8")
        assert "Installed version: 1.2.0" in log
        assert "Installed at: " in log

    @pytest.mark.asyncio
    async def test_reinstall_replaces_directory(self, harness: Harness) -> None:
        """Files from a previous install do not survive a reinstall."""
        old = install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        (old / "obsolete.txt").write_text("x", encoding="utf-8")

        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.DONE
        assert not (old / "obsolete.txt").exists()

    @pytest.mark.asyncio
    async def test_install_flat_file(self, harness: Harness) -> None:
        """A binary is placed flat with a sidecar recording the requested version."""
        install_directory_plugin(harness.root, "OzStrips", "1.0.0")

        request = OperationRequest(plugin_name="OzStrips", download_url=DLL_URL, version="v2.0")
        event = await harness.reconciler.install(request)

        assert event.status == OperationStatus.DONE
        assert event.version == "2.0.0"
        assert (harness.root / "OzStrips.dll").read_bytes() == b"MZ-strips"
        assert json.loads((harness.root / "OzStrips.version.json").read_text(encoding="utf-8")) == {"version": "2.0.0"}
        assert not (harness.root / "OzStrips").exists()
        assert harness.settings.get_fallback_version("OzStrips") == "2.0.0"

    @pytest.mark.asyncio
    async def test_flat_file_binary_version_wins(self, harness: Harness) -> None:
        """The binary's own file version beats the requested version."""
        harness.binaries.versions["OzStrips.dll"] = "2.0.3"
        request = OperationRequest(plugin_name="OzStrips", download_url=DLL_URL, version="2.0.0")

        event = await harness.reconciler.install(request)
        assert event.version == "2.0.3"

    @pytest.mark.asyncio
    async def test_host_running(self, harness: Harness) -> None:
        """Nothing is downloaded while the host runs."""
        harness.processes.running = True
        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.RUNNING
        assert event.reason == NotAvailableReason.HOST_RUNNING
        assert harness.downloads.requested == []
        assert harness.events.statuses == [OperationStatus.CHECKING, OperationStatus.RUNNING]

    @pytest.mark.asyncio
    async def test_host_not_configured(self, harness: Harness) -> None:
        """Without a host location nothing is installed."""
        harness.settings.clear_host_location()
        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.NOT_AVAILABLE
        assert event.reason == NotAvailableReason.HOST_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_malformed_archive_leaves_install_alone(self, harness: Harness) -> None:
        """A payload-less archive fails before touching the plugin root."""
        old = install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        harness.downloads.bodies[ZIP_URL] = build_zip({"readme.txt": b"nothing here"})

        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.FAILED
        assert (old / "version.json").exists()
        assert OperationStatus.INSTALLING not in harness.events.statuses

    @pytest.mark.asyncio
    async def test_unsupported_compression_fails(self, harness: Harness) -> None:
        """An archive zipfile cannot decompress ends as failed, not as an exception."""
        old = install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        harness.downloads.bodies[ZIP_URL] = with_compression_method(VATACARS_ZIP, 9)

        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.FAILED
        assert harness.events.last is event
        assert len(harness.terminal_events("vatACARS")) == 1
        assert (old / "version.json").exists()
        assert list(harness.reconciler.config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_fails(self, harness: Harness) -> None:
        """Errors outside the hub taxonomy still end as one failed event."""
        harness.reconciler.executor_factory = lambda root: CrashingExecutor()
        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.FAILED
        assert "executor crashed" in (event.error or "")
        assert len(harness.terminal_events("vatACARS")) == 1
        assert not harness.reconciler.guard.is_held("vatACARS")

    @pytest.mark.asyncio
    async def test_download_failure(self, harness: Harness) -> None:
        """A failed download ends as failed with the error."""
        request = OperationRequest(plugin_name="vatACARS", download_url="https://example.com/gone.zip")
        event = await harness.reconciler.install(request)

        assert event.status == OperationStatus.FAILED
        assert event.error is not None and "not found" in event.error.lower()

    @pytest.mark.asyncio
    async def test_elevation_denied(self, harness: Harness) -> None:
        """A refused elevation prompt ends as failed and cleans up staging."""
        harness.reconciler.executor_factory = lambda root: DenyingExecutor()
        event = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))

        assert event.status == OperationStatus.FAILED
        assert "privileges" in (event.error or "")
        assert not (harness.root / "vatACARS").exists()
        assert list(harness.reconciler.config.temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unknown_kind(self, harness: Harness) -> None:
        """An asset of unknown kind fails."""
        request = OperationRequest(plugin_name="vatACARS", download_url="https://example.com/vatACARS.exe")
        event = await harness.reconciler.install(request)
        assert event.status == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_installs_serialised(self, harness: Harness) -> None:
        """Two installs of one plugin run one after the other."""
        request = OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL)
        first, second = await asyncio.gather(
            harness.reconciler.install(request), harness.reconciler.install(request)
        )

        assert first.status == second.status == OperationStatus.DONE
        statuses = harness.events.statuses
        first_done = statuses.index(OperationStatus.DONE)
        assert statuses.count(OperationStatus.CHECKING) == 2
        assert statuses.index(OperationStatus.CHECKING, 1) > first_done

    @pytest.mark.asyncio
    async def test_on_disk_version_wins_over_request(self, harness: Harness) -> None:
        """The version reported is the one found on disk, not the one requested."""
        request = OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL, version="9.9.9")
        event = await harness.reconciler.install(request)

        assert event.status == OperationStatus.DONE
        assert event.version == "1.2.0"

        report = await harness.reconciler.check(VATACARS)
        assert report.record.installed_version == "1.2.0"
        assert report.status == OperationStatus.UP_TO_DATE

    @pytest.mark.asyncio
    async def test_sequential_installs_keep_latest(self, harness: Harness) -> None:
        """A second install with a newer payload replaces the first."""
        newer_url = "https://github.com/vatacars/vatsys-plugin/releases/download/v1.3.0/vatACARS.zip"
        harness.downloads.bodies[newer_url] = build_zip(
            {
                "vatACARS/vatACARS.dll": b"MZ-newer",
                "vatACARS/version.json": b'{"version": "1.3.0"}',
            }
        )

        first = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=ZIP_URL))
        second = await harness.reconciler.install(OperationRequest(plugin_name="vatACARS", download_url=newer_url))

        assert (first.version, second.version) == ("1.2.0", "1.3.0")
        record = await harness.reconciler.inspect(VATACARS)
        assert record.installed_version == "1.3.0"
        assert (harness.root / "vatACARS" / "vatACARS.dll").read_bytes() == b"MZ-newer"
        assert not (harness.root / "vatACARS" / "Sounds").exists()


class TestHostChecks:
    """Tests for the host preconditions shared by every operation."""

    @pytest.mark.asyncio
    async def test_running_host_raises_busy(self, harness: Harness) -> None:
        """A running host is reported as HostBusyError naming the process."""
        harness.processes.running = True
        with pytest.raises(HostBusyError) as exc_info:
            await harness.reconciler._require_host()
        assert exc_info.value.process_name == "vatSys.exe"

    @pytest.mark.asyncio
    async def test_unconfigured_host_raises(self, harness: Harness) -> None:
        """A missing host location is reported as HostNotConfiguredError."""
        harness.settings.clear_host_location()
        with pytest.raises(HostNotConfiguredError):
            await harness.reconciler._require_host()

    @pytest.mark.asyncio
    async def test_busy_host_becomes_running_event(self, harness: Harness) -> None:
        """Uninstall turns a busy host into a running event with its message."""
        harness.processes.running = True
        event = await harness.reconciler.uninstall(VATACARS)

        assert event.status == OperationStatus.RUNNING
        assert event.reason == NotAvailableReason.HOST_RUNNING
        assert "vatSys.exe is running" in (event.message or "")

    @pytest.mark.asyncio
    async def test_unconfigured_host_check_message(self, harness: Harness) -> None:
        """The check report carries the host error's message."""
        harness.settings.clear_host_location()
        report = await harness.reconciler.check(VATACARS)

        assert report.reason == NotAvailableReason.HOST_NOT_CONFIGURED
        assert report.message == "vatSys location is not set"


class TestUpdate:
    """Tests for update."""

    @pytest.mark.asyncio
    async def test_update_outdated(self, harness: Harness) -> None:
        """An outdated plugin is reinstalled from the latest release."""
        install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        event = await harness.reconciler.update(VATACARS)

        assert event.status == OperationStatus.DONE
        assert event.version == "1.2.0"
        assert harness.events.statuses[0] == OperationStatus.CHECKING
        assert len(harness.terminal_events("vatACARS")) == 1

    @pytest.mark.asyncio
    async def test_update_not_installed(self, harness: Harness) -> None:
        """A missing plugin is installed."""
        event = await harness.reconciler.update(OZSTRIPS)

        assert event.status == OperationStatus.DONE
        assert (harness.root / "OzStrips.dll").exists()
        assert event.version == "2.0.0"

    @pytest.mark.asyncio
    async def test_update_up_to_date(self, harness: Harness) -> None:
        """Nothing is downloaded when already current."""
        install_directory_plugin(harness.root, "vatACARS", "1.2.0")
        event = await harness.reconciler.update(VATACARS)

        assert event.status == OperationStatus.UP_TO_DATE
        assert harness.downloads.requested == []

    @pytest.mark.asyncio
    async def test_update_host_running(self, harness: Harness) -> None:
        """A running host blocks the update."""
        install_directory_plugin(harness.root, "vatACARS", "1.1.0")
        harness.processes.running = True

        event = await harness.reconciler.update(VATACARS)
        assert event.status == OperationStatus.NOT_AVAILABLE
        assert event.reason == NotAvailableReason.HOST_RUNNING
        assert harness.downloads.requested == []


class TestUninstall:
    """Tests for uninstall."""

    @pytest.mark.asyncio
    async def test_uninstall_directory(self, harness: Harness) -> None:
        """Every trace of the plugin is removed."""
        install_directory_plugin(harness.root, "vatACARS", "1.2.0")
        (harness.root / "vatACARS.dll").write_bytes(b"MZ")

        event = await harness.reconciler.uninstall(VATACARS)

        assert event.status == OperationStatus.DONE
        assert not (harness.root / "vatACARS").exists()
        assert not (harness.root / "vatACARS.dll").exists()
        assert harness.events.statuses == [OperationStatus.UNINSTALLING, OperationStatus.DONE]

    @pytest.mark.asyncio
    async def test_uninstall_flat_clears_fallback(self, harness: Harness) -> None:
        """Flat installs lose their sidecar and persisted version."""
        (harness.root / "OzStrips.dll").write_bytes(b"MZ")
        (harness.root / "OzStrips.version.json").write_text('{"version": "2.0.0"}', encoding="utf-8")
        harness.settings.set_fallback_version("OzStrips", "2.0.0")

        event = await harness.reconciler.uninstall(OZSTRIPS)

        assert event.status == OperationStatus.DONE
        assert list(harness.root.iterdir()) == []
        assert harness.settings.get_fallback_version("OzStrips") is None

    @pytest.mark.asyncio
    async def test_uninstall_missing(self, harness: Harness) -> None:
        """Removing a plugin that is not there still succeeds."""
        event = await harness.reconciler.uninstall(VATACARS)
        assert event.status == OperationStatus.DONE
        assert event.message == "Plugin was not installed"

    @pytest.mark.asyncio
    async def test_uninstall_host_running(self, harness: Harness) -> None:
        """Nothing is removed while the host runs."""
        install_directory_plugin(harness.root, "vatACARS", "1.2.0")
        harness.processes.running = True

        event = await harness.reconciler.uninstall(VATACARS)
        assert event.status == OperationStatus.RUNNING
        assert (harness.root / "vatACARS").exists()

    @pytest.mark.asyncio
    async def test_uninstall_verified(self, harness: Harness) -> None:
        """A batch that claims success but leaves files behind fails."""
        install_directory_plugin(harness.root, "vatACARS", "1.2.0")
        harness.reconciler.executor_factory = lambda root: NoopExecutor()

        event = await harness.reconciler.uninstall(VATACARS)
        assert event.status == OperationStatus.FAILED
        assert "Could not remove" in (event.error or "")
