from __future__ import annotations

import json
import sys
import time

import pytest

from batchbrake.cancellation import CancellationSource
from batchbrake.errors import ConversionCancelledError, ConversionFailedError
from batchbrake.handbrake import (
    HandBrakeConfig,
    HandBrakeConverter,
    parse_preset_list,
    parse_progress,
    read_preset_file,
)

PRESET_LIST_OUTPUT = """\
[12:00:00] hb_init: starting libhb thread
HandBrake 1.7.2 - Linux x86_64
General/
    Very Fast 1080p30
        Small H.264 video (up to 1080p30) and AAC stereo audio, in an MP4 container.
    Fast 1080p30
        H.264 video (up to 1080p30) and AAC stereo audio, in an MP4 container.
Web/
    Creator 2160p60 4K
        High quality H.264 video for uploading.
"""


def _python(script):
    return [sys.executable, "-c", script]


def test_parse_progress_single_task():
    assert parse_progress("Encoding: task 1 of 1, 45.67 % (30.1 fps, avg 29.0 fps, ETA 00h01m10s)") == pytest.approx(45.67)
    assert parse_progress("Muxing: this may take awhile...") is None


def test_parse_progress_weights_multi_pass_tasks():
    assert parse_progress("Encoding: task 1 of 2, 50.00 %") == pytest.approx(25.0)
    assert parse_progress("Encoding: task 2 of 2, 50.00 %") == pytest.approx(75.0)


def test_parse_preset_list_groups_by_category():
    presets = parse_preset_list(PRESET_LIST_OUTPUT)

    assert presets == {
        "General": ["Very Fast 1080p30", "Fast 1080p30"],
        "Web": ["Creator 2160p60 4K"],
    }


def test_build_command_defaults_to_gui_presets():
    converter = HandBrakeConverter(HandBrakeConfig(additional_arguments="--optimize --encoder-preset 'slow'"))

    cmd = converter.build_command("/in/a.mkv", "/out/a.mp4", "Fast 1080p30")

    assert cmd == [
        "HandBrakeCLI",
        "--preset-import-gui",
        "-i",
        "/in/a.mkv",
        "-o",
        "/out/a.mp4",
        "-Z",
        "Fast 1080p30",
        "--optimize",
        "--encoder-preset",
        "slow",
    ]


def test_build_command_imports_existing_preset_files(tmp_path):
    preset_file = tmp_path / "mine.json"
    preset_file.write_text("{}", encoding="utf-8")
    config = HandBrakeConfig(cli_path="hb", preset_files=(str(preset_file), str(tmp_path / "missing.json")))

    cmd = HandBrakeConverter(config).build_command("a.mkv", "b.mp4")

    assert cmd == ["hb", "--preset-import-file", str(preset_file), "-i", "a.mkv", "-o", "b.mp4"]


def test_custom_preset_files_are_listed(tmp_path):
    preset_file = tmp_path / "mine.json"
    preset_file.write_text(
        json.dumps({"PresetList": [{"PresetName": "Archive"}, {"PresetName": "Phone"}, {"Other": 1}]}),
        encoding="utf-8",
    )

    assert read_preset_file(str(preset_file)) == ["Archive", "Phone"]
    converter = HandBrakeConverter(HandBrakeConfig(cli_path="/nonexistent/hb", preset_files=(str(preset_file),)))
    assert converter.list_presets() == {"Custom": ["Archive", "Phone"]}


def test_execute_reports_progress_and_success():
    script = (
        "for p in (10.5, 50.0, 99.9):\n"
        "    print(f'Encoding: task 1 of 1, {p:.2f} %', flush=True)\n"
    )
    seen = []
    converter = HandBrakeConverter()

    result = converter._execute(_python(script), seen.append, CancellationSource().signal)

    assert result.success
    assert result.exit_code == 0
    assert seen == pytest.approx([10.5, 50.0, 99.9])


def test_execute_reports_failure_with_output_tail():
    script = "import sys\nprint('Error: input is not a video', flush=True)\nsys.exit(3)\n"

    result = HandBrakeConverter()._execute(_python(script), lambda _v: None, CancellationSource().signal)

    assert not result.success
    assert result.exit_code == 3
    assert "exited with code 3" in result.error
    assert "Error: input is not a video" in result.error


def test_execute_kills_process_on_cancel():
    script = (
        "import time\n"
        "print('Encoding: task 1 of 1, 5.00 %', flush=True)\n"
        "time.sleep(30)\n"
    )
    source = CancellationSource()
    converter = HandBrakeConverter(HandBrakeConfig(kill_timeout=5.0))

    started = time.time()
    with pytest.raises(ConversionCancelledError):
        converter._execute(_python(script), lambda _v: source.cancel(), source.signal)

    assert time.time() - started < 10


def test_execute_does_not_launch_when_already_cancelled(tmp_path):
    marker = tmp_path / "ran"
    source = CancellationSource()
    source.cancel()

    with pytest.raises(ConversionCancelledError):
        HandBrakeConverter()._execute(
            _python(f"open({str(marker)!r}, 'w').close()"), lambda _v: None, source.signal
        )

    assert not marker.exists()


def test_missing_cli_is_a_conversion_failure(tmp_path):
    converter = HandBrakeConverter(HandBrakeConfig(cli_path=str(tmp_path / "HandBrakeCLI")))

    with pytest.raises(ConversionFailedError):
        converter.convert(
            str(tmp_path / "in.mkv"), str(tmp_path / "out" / "a.mp4"), None, lambda _v: None, CancellationSource().signal
        )
    assert converter.is_available() is False
    assert (tmp_path / "out").is_dir()
