from pathlib import Path

import pytest

from helmsman.tools.glob import GlobTool
from helmsman.tools.read import ReadTool
from helmsman.tools.write import WriteTool


@pytest.mark.asyncio
async def test_read_resolves_relative_path_against_workspace(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")

    result = await ReadTool().execute(path="notes.txt", _workspace=tmp_path)

    assert result.success is True
    assert "3 lines" in result.content
    assert result.content.endswith("one\ntwo\nthree")


@pytest.mark.asyncio
async def test_read_offset_and_limit(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("a\nb\nc\nd\n", encoding="utf-8")

    result = await ReadTool().execute(path="notes.txt", offset=2, limit=2, _workspace=tmp_path)

    assert result.success is True
    assert "[lines 2-3]" in result.content
    assert result.content.splitlines()[1:] == ["b", "c"]


@pytest.mark.asyncio
async def test_read_missing_file_fails(tmp_path: Path):
    result = await ReadTool().execute(path="missing.txt", _workspace=tmp_path)

    assert result.success is False
    assert result.error == "File not found: missing.txt"


@pytest.mark.asyncio
async def test_read_rejects_directory(tmp_path: Path):
    (tmp_path / "sub").mkdir()

    result = await ReadTool().execute(path="sub", _workspace=tmp_path)

    assert result.success is False
    assert "Not a file" in result.error


@pytest.mark.asyncio
async def test_write_creates_parent_dirs_and_appends(tmp_path: Path):
    tool = WriteTool()

    first = await tool.execute(path="out/log.txt", content="hello", _workspace=tmp_path)
    second = await tool.execute(path="out/log.txt", content=" world", append=True, _workspace=tmp_path)

    assert first.success is True
    assert second.success is True
    assert second.content.startswith("Appended 6 chars")
    assert (tmp_path / "out" / "log.txt").read_text(encoding="utf-8") == "hello world"


@pytest.mark.asyncio
async def test_write_refuses_paths_outside_workspace(tmp_path: Path):
    workspace = tmp_path / "ws"
    workspace.mkdir()

    result = await WriteTool().execute(path="../escape.txt", content="x", _workspace=workspace)

    assert result.success is False
    assert "outside the workspace" in result.error
    assert not (tmp_path / "escape.txt").exists()


def test_write_tool_requires_confirmation():
    assert WriteTool().descriptor().requires_confirmation is True


@pytest.mark.asyncio
async def test_glob_lists_matches_sorted_and_limited(tmp_path: Path):
    for name in ("b.py", "a.py", "c.txt"):
        (tmp_path / name).write_text("", encoding="utf-8")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "d.py").write_text("", encoding="utf-8")

    result = await GlobTool().execute(pattern="**/*.py", limit=2, _workspace=tmp_path)

    assert result.success is True
    assert "Found 3 file(s)" in result.content
    assert "showing first 2" in result.content
    assert "  a.py" in result.content
    assert "  b.py" in result.content


@pytest.mark.asyncio
async def test_glob_reports_no_matches(tmp_path: Path):
    result = await GlobTool().execute(pattern="*.rs", _workspace=tmp_path)

    assert result.success is True
    assert result.content.startswith("No files found matching: *.rs")
