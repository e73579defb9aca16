"""Tests for the command line tool."""
import json

import pytest

from conftest import FakeAdapter
from cutline import cli
from cutline.models.job import JobKind


def test_parser_and_settings(tmp_path):
    args = cli.build_parser().parse_args([
        "--output-dir", str(tmp_path / "out"),
        "--workers", "3",
        "scene-clip", "video.mp4",
        "--max-scenes", "4",
    ])
    settings = cli.settings_from_args(args)

    assert cli.COMMANDS[args.command] == JobKind.SCENE_CLIP
    assert args.max_scenes == 4
    assert settings.storage_dir == tmp_path / "out"
    assert settings.worker_count == 3


def test_missing_video_exits_2(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert cli.main(["clip", str(tmp_path / "nope.mp4"), "--start", "0", "--end", "1"]) == 2


def test_bad_range_exits_2(tmp_path, monkeypatch, video_file):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("cutline.core.MediaToolAdapter", lambda settings: FakeAdapter())
    assert cli.main(["clip", str(video_file), "--start", "3", "--end", "1"]) == 2


def test_clip_runs_to_completion(tmp_path, monkeypatch, capsys, video_file):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("cutline.core.MediaToolAdapter", lambda settings: FakeAdapter())

    code = cli.main([
        "--output-dir", str(tmp_path / "out"),
        "--work-dir", str(tmp_path / "work"),
        "clip", str(video_file), "--start", "1", "--end", "4", "--name", "first.mp4",
    ])

    assert code == 0
    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "done"
    assert result["output_ref"] == "storage://first.mp4"
    assert (tmp_path / "out" / "first.mp4").exists()
    assert list((tmp_path / "work").iterdir()) == []


@pytest.mark.parametrize("command", ["scenes", "scene-clip"])
def test_scene_commands_reject_range_flags(command):
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([command, "video.mp4", "--start", "1"])
