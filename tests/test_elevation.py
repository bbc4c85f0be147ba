"""Tests for batched privileged filesystem operations."""

from __future__ import annotations

import sys
import zipfile
from pathlib import Path

import pytest

from hub.elevation import (
    FileOperation,
    LocalExecutor,
    OperationBatch,
    OpKind,
    PosixShellAdapter,
    PowerShellAdapter,
    PrivilegedExecutor,
    create_executor,
    has_write_access,
    is_protected_path,
    ps_quote,
)
from hub.errors import ElevationDeniedError, ExecutionFailedError
from hub.models import HubConfig

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="runs /bin/sh scripts")


def _make_tree(root: Path) -> Path:
    source = root / "source"
    (source / "sub").mkdir(parents=True)
    (source / "Plugin.dll").write_bytes(b"MZ")
    (source / "sub" / "data.txt").write_text("data", encoding="utf-8")
    return source


class TestOperationBatch:
    """Tests for OperationBatch."""

    def test_chaining(self, tmp_path: Path) -> None:
        """Builder calls chain and keep order."""
        batch = (
            OperationBatch("install")
            .mkdir(tmp_path / "a")
            .delete(tmp_path / "b")
            .copy(tmp_path / "c", tmp_path / "d")
        )
        assert [op.kind for op in batch] == [OpKind.MKDIR, OpKind.DELETE, OpKind.COPY]
        assert len(batch) == 3
        assert batch.operations[2].describe() == f"copy {tmp_path / 'c'} -> {tmp_path / 'd'}"

    def test_relative_path_rejected(self) -> None:
        """Only absolute paths are accepted."""
        with pytest.raises(ValueError):
            OperationBatch().delete(Path("relative/dir"))

    def test_newline_rejected(self, tmp_path: Path) -> None:
        """Paths with line breaks cannot be scripted safely."""
        with pytest.raises(ValueError):
            OperationBatch().mkdir(tmp_path / "bad\nname")


class TestPowerShellAdapter:
    """Tests for the PowerShell renderer."""

    def test_quote(self) -> None:
        """Single quotes are doubled inside literals."""
        assert ps_quote("C:/it's here") == "'C:/it''s here'"

    def test_render(self, tmp_path: Path) -> None:
        """Each operation is rendered with literal paths and the sentinel comes last."""
        plugin_dir = tmp_path / "Plugins" / "O'Brien"
        batch = OperationBatch("install").delete(plugin_dir).copy(tmp_path / "stage", plugin_dir)
        script = PowerShellAdapter().render(batch, "SENTINEL-1", tmp_path / "batch.log")

        quoted = str(plugin_dir).replace("'", "''")
        assert "$ErrorActionPreference = 'Stop'" in script
        assert f"Remove-Item -LiteralPath '{quoted}'" in script
        assert f"Copy-Item -LiteralPath '{tmp_path / 'stage'}'" in script
        assert script.index("Copy-Item") < script.index("SENTINEL-1")
        assert "exit 1" in script

    def test_command_requests_elevation(self) -> None:
        """The launcher asks for RunAs and propagates the exit code."""
        command = PowerShellAdapter().command(Path("C:/Temp/batch.ps1"))
        assert command[0] == "powershell.exe"
        assert "-Verb RunAs" in command[-1]
        assert "exit $p.ExitCode" in command[-1]

    def test_denied_marker(self) -> None:
        """UAC cancellation is recognised."""
        assert PowerShellAdapter().is_denied("The operation was canceled by the user.")
        assert not PowerShellAdapter().is_denied("Access to the path is denied.")


class TestPosixShellAdapter:
    """Tests for the POSIX shell renderer."""

    def test_render_quotes_paths(self, tmp_path: Path) -> None:
        """Paths with spaces and quotes are shell-quoted."""
        target = tmp_path / "it's a dir"
        script = PosixShellAdapter().render(OperationBatch().mkdir(target), "OK", tmp_path / "log")

        assert "set -e" in script
        assert "mkdir -p -- '" in script
        assert script.rstrip().endswith("echo OK")

    def test_command(self, tmp_path: Path) -> None:
        """The elevation prefix comes first."""
        assert PosixShellAdapter().command(tmp_path / "s.sh") == ["sudo", "/bin/sh", str(tmp_path / "s.sh")]
        assert PosixShellAdapter(elevation_command=[]).command(tmp_path / "s.sh")[0] == "/bin/sh"

    def test_denied_marker(self) -> None:
        """sudo refusals are recognised."""
        assert PosixShellAdapter().is_denied("sudo: a password is required")


@posix_only
class TestPrivilegedExecutor:
    """Tests for PrivilegedExecutor with an unelevated shell."""

    @pytest.mark.asyncio
    async def test_batch_applied(self, tmp_path: Path) -> None:
        """Every operation runs and the sentinel is stripped from the output."""
        source = _make_tree(tmp_path)
        plugins = tmp_path / "Plugins"
        stale = plugins / "Plugin"
        stale.mkdir(parents=True)
        (stale / "old.dll").write_bytes(b"old")

        batch = (
            OperationBatch("install Plugin")
            .mkdir(plugins)
            .delete(stale)
            .copy(source, plugins / "Plugin")
        )
        executor = PrivilegedExecutor(PosixShellAdapter(elevation_command=[]), work_dir=tmp_path)
        output = await executor.run_elevated(batch)

        assert (plugins / "Plugin" / "Plugin.dll").read_bytes() == b"MZ"
        assert (plugins / "Plugin" / "sub" / "data.txt").exists()
        assert not (plugins / "Plugin" / "old.dll").exists()
        assert "HUB-BATCH-OK" not in output
        assert "copy" in output
        assert list(tmp_path.glob("hub-elevate-*")) == []

    @pytest.mark.asyncio
    async def test_failure_without_sentinel(self, tmp_path: Path) -> None:
        """A failing operation stops the batch and reports partial output."""
        batch = (
            OperationBatch("broken")
            .mkdir(tmp_path / "made")
            .copy(tmp_path / "missing", tmp_path / "target")
            .mkdir(tmp_path / "never")
        )
        executor = PrivilegedExecutor(PosixShellAdapter(elevation_command=[]), work_dir=tmp_path)

        with pytest.raises(ExecutionFailedError) as exc_info:
            await executor.run_elevated(batch)

        assert (tmp_path / "made").is_dir()
        assert not (tmp_path / "never").exists()
        assert exc_info.value.exit_code != 0
        assert "mkdir" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_zero_exit_without_sentinel_fails(self, tmp_path: Path) -> None:
        """A helper that exits 0 without running the script is a failure."""
        adapter = PosixShellAdapter(elevation_command=["sh", "-c", "exit 0", "--"])
        executor = PrivilegedExecutor(adapter, work_dir=tmp_path)

        with pytest.raises(ExecutionFailedError):
            await executor.run_elevated(OperationBatch().mkdir(tmp_path / "x"))
        assert not (tmp_path / "x").exists()

    @pytest.mark.asyncio
    async def test_denied(self, tmp_path: Path) -> None:
        """A refused elevation is reported as such."""
        adapter = PosixShellAdapter(
            elevation_command=["sh", "-c", "echo 'sudo: a password is required' >&2; exit 1", "--"]
        )
        executor = PrivilegedExecutor(adapter, work_dir=tmp_path)

        with pytest.raises(ElevationDeniedError):
            await executor.run_elevated(OperationBatch().mkdir(tmp_path / "x"))

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        """A hung helper is killed."""
        adapter = PosixShellAdapter(elevation_command=["sh", "-c", "exec sleep 5", "--"])
        executor = PrivilegedExecutor(adapter, timeout=0.2, work_dir=tmp_path)

        with pytest.raises(ExecutionFailedError, match="timed out"):
            await executor.run_elevated(OperationBatch().mkdir(tmp_path / "x"))

    @pytest.mark.asyncio
    async def test_empty_batch(self, tmp_path: Path) -> None:
        """An empty batch never prompts."""
        adapter = PosixShellAdapter(elevation_command=["false"])
        assert await PrivilegedExecutor(adapter).run_elevated(OperationBatch()) == ""


class TestLocalExecutor:
    """Tests for LocalExecutor."""

    @pytest.mark.asyncio
    async def test_copy_move_delete(self, tmp_path: Path) -> None:
        """Operations apply in order."""
        source = _make_tree(tmp_path)
        batch = (
            OperationBatch()
            .mkdir(tmp_path / "out")
            .copy(source, tmp_path / "out" / "tree")
            .copy(source / "Plugin.dll", tmp_path / "out" / "Flat.dll")
            .move(tmp_path / "out" / "Flat.dll", tmp_path / "out" / "Moved.dll")
            .delete(tmp_path / "out" / "tree" / "sub")
            .delete(tmp_path / "out" / "absent")
        )
        output = await LocalExecutor().run_elevated(batch)

        assert (tmp_path / "out" / "tree" / "Plugin.dll").exists()
        assert not (tmp_path / "out" / "tree" / "sub").exists()
        assert (tmp_path / "out" / "Moved.dll").exists()
        assert not (tmp_path / "out" / "Flat.dll").exists()
        assert len(output.splitlines()) == 6

    @pytest.mark.asyncio
    async def test_extract(self, tmp_path: Path) -> None:
        """Zip archives are extracted safely."""
        archive = tmp_path / "a.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("Plugin/Plugin.dll", b"MZ")
        await LocalExecutor().run_elevated(OperationBatch().extract(archive, tmp_path / "x"))
        assert (tmp_path / "x" / "Plugin" / "Plugin.dll").exists()

    @pytest.mark.asyncio
    async def test_failure_reports_progress(self, tmp_path: Path) -> None:
        """A failure lists the operations that completed."""
        batch = OperationBatch().mkdir(tmp_path / "ok").copy(tmp_path / "missing", tmp_path / "t")

        with pytest.raises(ExecutionFailedError) as exc_info:
            await LocalExecutor().run_elevated(batch)
        assert exc_info.value.output == f"mkdir {tmp_path / 'ok'}"

    @pytest.mark.asyncio
    async def test_missing_source_rejected(self, tmp_path: Path) -> None:
        """A copy without a source fails as an execution error."""
        batch = OperationBatch()
        batch.operations.append(FileOperation(OpKind.COPY, tmp_path / "t"))

        with pytest.raises(ExecutionFailedError) as exc_info:
            await LocalExecutor().run_elevated(batch)
        assert "needs a source path" in str(exc_info.value)
        assert not (tmp_path / "t").exists()


class TestExecutorSelection:
    """Tests for choosing between local and privileged execution."""

    def test_protected_paths(self) -> None:
        """Program Files is protected regardless of slashes or case."""
        assert is_protected_path(Path("C:/Program Files (x86)/vatSys/bin/Plugins"))
        assert is_protected_path(Path(r"c:\program files\vatSys"))
        assert not is_protected_path(Path("D:/Games/vatSys"))

    def test_writable_uses_local(self, tmp_path: Path) -> None:
        """A writable target needs no elevation."""
        assert has_write_access(tmp_path / "not" / "yet" / "created")
        assert isinstance(create_executor(HubConfig(), tmp_path), LocalExecutor)
