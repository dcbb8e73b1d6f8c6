"""Shared pytest fixtures: a capture strategy that runs small Python scripts instead of ffmpeg."""

import sys
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from snapcap.models import CaptureMode, Settings, effective_resolution, parse_resolution  # noqa: E402
from snapcap.strategy import PLAYLIST_NAME, Command  # noqa: E402

MISSING_BINARY = "/nonexistent/snapcap-test-ffmpeg"

# argv[1] is the HLS work directory
STREAM_OK = """
import sys, time, pathlib
d = pathlib.Path(sys.argv[1])
(d / "segment_000.ts").write_bytes(b"G" * 188)
(d / "stream.m3u8").write_text("#EXTM3U\\n#EXT-X-TARGETDURATION:1\\n#EXTINF:1.0,\\nsegment_000.ts\\n")
sys.stderr.write("Output #0, hls, to 'stream.m3u8':\\n")
sys.stderr.flush()
time.sleep(60)
"""

STREAM_NO_PLAYLIST = """
import sys, time
sys.stderr.write("Output #0, hls, to 'stream.m3u8':\\n")
sys.stderr.flush()
time.sleep(60)
"""

STREAM_ENDS = """
import sys, time, pathlib
d = pathlib.Path(sys.argv[1])
(d / "stream.m3u8").write_text("#EXTM3U\\n#EXTINF:1.0,\\nsegment_000.ts\\n")
sys.stderr.write("Output #0, hls, to 'stream.m3u8':\\n")
sys.stderr.flush()
time.sleep(1.0)
sys.stderr.write("Conversion failed!\\n")
sys.exit(0)
"""

CRASH = """
import sys
sys.stderr.write("[video4linux2] Cannot open video device: boom\\n")
sys.stderr.flush()
sys.exit(3)
"""

# argv[1], argv[2] are the frame width and height
PREVIEW_OK = """
import sys, time
w, h = int(sys.argv[1]), int(sys.argv[2])
frame = bytes([255, 0, 0]) * (w * h)
while True:
    sys.stdout.buffer.write(frame)
    sys.stdout.buffer.flush()
    time.sleep(0.05)
"""

# argv[1] is the output path
SNAPSHOT_OK = """
import sys
from PIL import Image
Image.new("RGB", (8, 6), (10, 200, 30)).save(sys.argv[1], "JPEG")
"""

SNAPSHOT_FAIL = """
import sys
sys.stderr.write("Input/output error\\n/dev/video9: No such device\\n")
sys.exit(1)
"""

SNAPSHOT_HANG = """
import time
time.sleep(30)
"""

SNAPSHOT_GARBAGE = """
import sys
open(sys.argv[1], "wb").write(b"this is not a jpeg")
"""


class FakeStrategy:
    """Stands in for CaptureStrategy; each mode runs a Python script, per-device overrides allowed"""

    input_format = "fake"
    platform_name = "Test"

    def __init__(self, stream=STREAM_OK, preview=PREVIEW_OK, snapshot=SNAPSHOT_OK, overrides=None):
        self.scripts = {
            CaptureMode.STREAM: stream,
            CaptureMode.PREVIEW: preview,
            CaptureMode.SNAPSHOT: snapshot,
        }
        self.overrides = overrides or {}

    def _argv(self, mode, device_id, *args):
        script = self.overrides.get(device_id, self.scripts[mode])
        if script is None:
            return (MISSING_BINARY,) + tuple(str(arg) for arg in args)
        return (sys.executable, "-c", script) + tuple(str(arg) for arg in args)

    def _frame_size(self, camera, settings):
        return parse_resolution(effective_resolution(camera, settings)) or (640, 480)

    def build_preview_command(self, camera, settings):
        width, height = self._frame_size(camera, settings)
        argv = self._argv(CaptureMode.PREVIEW, camera.device_id, width, height)
        return Command(argv, CaptureMode.PREVIEW, (width, height))

    def build_stream_command(self, camera, settings, work_dir):
        argv = self._argv(CaptureMode.STREAM, camera.device_id, work_dir)
        return Command(argv, CaptureMode.STREAM, self._frame_size(camera, settings),
                       output_path=Path(work_dir) / PLAYLIST_NAME)

    def build_snapshot_command(self, camera, settings, output_path):
        argv = self._argv(CaptureMode.SNAPSHOT, camera.device_id, output_path)
        return Command(argv, CaptureMode.SNAPSHOT, self._frame_size(camera, settings),
                       output_path=Path(output_path))


def wait_for(predicate, timeout=10.0, interval=0.05):
    """Poll predicate until it returns truthy or timeout elapses; returns its last value"""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value or time.monotonic() >= deadline:
            return value
        time.sleep(interval)


@pytest.fixture
def fake_strategy():
    return FakeStrategy()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        snapshot_output_directory=str(tmp_path / "snapshots"),
        default_resolution="4x2",
        max_concurrent_sessions=2,
    )
