from __future__ import annotations

from pathlib import Path

import allure
import pytest

from flow_batch.scheduler.sink import FileOutputSink

pytestmark = [
    allure.epic("Batch Scheduling"),
    allure.feature("Output Sink"),
]


def test_write_creates_parent_directories(tmp_path: Path) -> None:
    sink = FileOutputSink(tmp_path / "out")

    path = sink.write("nested/dir/result.md", "héllo")

    assert path == tmp_path / "out" / "nested" / "dir" / "result.md"
    assert path.read_text("utf-8") == "héllo"
    assert sink.exists("nested/dir/result.md")
    assert not sink.exists("nested/other.md")


def test_write_overwrites_existing_file(tmp_path: Path) -> None:
    sink = FileOutputSink(tmp_path)
    sink.write("result.txt", "first")

    sink.write("result.txt", "second")

    assert (tmp_path / "result.txt").read_text("utf-8") == "second"


@pytest.mark.parametrize("name", ["", "   ", "../escape.txt", "a/../../escape.txt", "/etc/passwd"])
def test_names_outside_output_dir_are_rejected(tmp_path: Path, name: str) -> None:
    sink = FileOutputSink(tmp_path)

    with pytest.raises(ValueError, match="relative path"):
        sink.write(name, "content")
