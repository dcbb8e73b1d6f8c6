"""Tests for platform command building."""

from pathlib import Path

import pytest

from snapcap.models import CameraConfig, CaptureMode, Settings
from snapcap.strategy import PLAYLIST_NAME, CaptureStrategy, select_strategy


@pytest.fixture
def defaults():
    return Settings(default_resolution="320x240")


def _value_after(argv, flag):
    return argv[argv.index(flag) + 1]


class TestSelectStrategy:
    @pytest.mark.parametrize("system,expected", [
        ("Linux", CaptureStrategy.LINUX),
        ("Windows", CaptureStrategy.WINDOWS),
        ("Darwin", CaptureStrategy.MACOS),
        ("FreeBSD", CaptureStrategy.LINUX),
    ])
    def test_maps_host_to_input_format(self, system, expected):
        assert select_strategy(system) is expected

    def test_input_formats(self):
        assert CaptureStrategy.LINUX.input_format == "v4l2"
        assert CaptureStrategy.WINDOWS.input_format == "dshow"
        assert CaptureStrategy.MACOS.input_format == "avfoundation"

    def test_windows_prefixes_device_name(self):
        assert CaptureStrategy.WINDOWS.input_target("Integrated Webcam") == "video=Integrated Webcam"
        assert CaptureStrategy.LINUX.input_target("/dev/video0") == "/dev/video0"
        assert CaptureStrategy.MACOS.input_target("0") == "0"


class TestPreviewCommand:
    def test_raw_rgb_frames_on_stdout(self, defaults):
        camera = CameraConfig("/dev/video0", "Front")
        command = CaptureStrategy.LINUX.build_preview_command(camera, defaults)
        argv = list(command.argv)

        assert argv[0] == "ffmpeg"
        assert _value_after(argv, "-f") == "v4l2"
        assert _value_after(argv, "-video_size") == "320x240"
        assert _value_after(argv, "-i") == "/dev/video0"
        assert _value_after(argv, "-pix_fmt") == "rgb24"
        assert "rawvideo" in argv
        assert argv[-1] == "-"
        assert command.mode is CaptureMode.PREVIEW
        assert command.frame_size == (320, 240)
        assert command.frame_bytes == 320 * 240 * 3

    def test_camera_override_wins_over_default(self, defaults):
        camera = CameraConfig("0", "Side", resolution="1280x720")
        command = CaptureStrategy.MACOS.build_preview_command(camera, defaults)
        assert _value_after(list(command.argv), "-video_size") == "1280x720"
        assert command.frame_size == (1280, 720)

    def test_malformed_resolution_falls_back(self):
        camera = CameraConfig("/dev/video0", "Front", resolution="wide")
        command = CaptureStrategy.LINUX.build_preview_command(camera, Settings())
        assert command.frame_size == (640, 480)

    def test_custom_ffmpeg_path(self):
        camera = CameraConfig("/dev/video0", "Front")
        command = CaptureStrategy.LINUX.build_preview_command(camera, Settings(ffmpeg_path="/opt/ffmpeg/bin/ffmpeg"))
        assert command.argv[0] == "/opt/ffmpeg/bin/ffmpeg"


class TestStreamCommand:
    def test_hls_output_in_work_dir(self, defaults, tmp_path):
        camera = CameraConfig("/dev/video2", "Desk")
        command = CaptureStrategy.LINUX.build_stream_command(camera, defaults, tmp_path)
        argv = list(command.argv)

        assert command.mode is CaptureMode.STREAM
        assert command.output_path == tmp_path / PLAYLIST_NAME
        assert argv[-1] == str(tmp_path / PLAYLIST_NAME)
        assert _value_after(argv, "-hls_segment_filename") == str(tmp_path / "segment_%03d.ts")
        assert _value_after(argv, "-hls_flags") == "delete_segments+append_list"
        assert _value_after(argv, "-hls_list_size") == "3"
        assert _value_after(argv, "-c:v") == "libx264"
        assert _value_after(argv, "-video_size") == "320x240"
        assert "anullsrc=r=44100:cl=mono" in argv

    def test_windows_scales_after_capture(self, defaults, tmp_path):
        camera = CameraConfig("USB Camera", "USB")
        argv = list(CaptureStrategy.WINDOWS.build_stream_command(camera, defaults, tmp_path).argv)

        assert _value_after(argv, "-i") == "video=USB Camera"
        assert _value_after(argv, "-rtbufsize") == "100M"
        assert _value_after(argv, "-vf") == "scale=640:-2"
        assert "-video_size" not in argv


class TestSnapshotCommand:
    def test_linux_scales_output(self, defaults, tmp_path):
        output = tmp_path / "shot.jpg"
        camera = CameraConfig("/dev/video0", "Front")
        command = CaptureStrategy.LINUX.build_snapshot_command(camera, defaults, output)
        argv = list(command.argv)

        assert _value_after(argv, "-vf") == "scale=320:240"
        assert _value_after(argv, "-frames:v") == "1"
        assert "-y" in argv
        assert argv[-1] == str(output)
        assert command.output_path == Path(output)

    def test_macos_does_not_scale(self, defaults, tmp_path):
        camera = CameraConfig("1", "FaceTime")
        argv = list(CaptureStrategy.MACOS.build_snapshot_command(camera, defaults, tmp_path / "a.jpg").argv)
        assert "-vf" not in argv
        assert _value_after(argv, "-f") == "avfoundation"
