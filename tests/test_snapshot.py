"""Tests for snapshot bursts."""

from datetime import datetime
from pathlib import Path

from PIL import Image

from snapcap.models import CameraConfig
from snapcap.snapshot import SnapshotCoordinator, generate_filename, summarize

from conftest import SNAPSHOT_FAIL, SNAPSHOT_GARBAGE, SNAPSHOT_HANG, FakeStrategy


def cameras():
    return [
        CameraConfig("/dev/video0", "Front Door"),
        CameraConfig("/dev/video1", "Garage"),
        CameraConfig("/dev/video2", "Yard"),
    ]


def test_generate_filename():
    name = generate_filename(CameraConfig("0", "Front Door/1"), "snapshot_{id}_{timestamp}.jpg",
                             now=datetime(2024, 3, 5, 7, 8, 9))
    assert name == "snapshot_Front_Door_1_20240305_070809.jpg"


def test_one_failure_does_not_block_others(settings):
    strategy = FakeStrategy(overrides={"/dev/video1": SNAPSHOT_FAIL})
    results = SnapshotCoordinator(strategy).capture_all(cameras(), settings)

    assert [r.device_id for r in results] == ["/dev/video0", "/dev/video1", "/dev/video2"]
    assert sum(1 for r in results if r.success) == 2
    failed = results[1]
    assert not failed.success
    assert failed.output_path is None
    assert "exited with code 1" in failed.error
    assert "No such device" in failed.error
    for result in (results[0], results[2]):
        path = Path(result.output_path)
        assert path.parent == settings.output_dir
        with Image.open(path) as image:
            assert image.size == (8, 6)

    summary = summarize(results)
    assert summary.splitlines()[0] == "Captured 2 of 3 snapshots."
    assert "/dev/video1" in summary


def test_sequential_capture(settings):
    results = SnapshotCoordinator(FakeStrategy(), parallel=False).capture_all(cameras(), settings)
    assert all(r.success for r in results)
    assert len({r.output_path for r in results}) == 3


def test_inactive_cameras_are_skipped(settings):
    cams = [CameraConfig("/dev/video0", "On"), CameraConfig("/dev/video1", "Off", active=False)]
    results = SnapshotCoordinator(FakeStrategy()).capture_all(cams, settings)
    assert [r.device_id for r in results] == ["/dev/video0"]


def test_no_active_cameras(settings):
    assert SnapshotCoordinator(FakeStrategy()).capture_all([], settings) == []


def test_timeout(settings):
    coordinator = SnapshotCoordinator(FakeStrategy(snapshot=SNAPSHOT_HANG), timeout=0.5)
    result = coordinator.capture_one(CameraConfig("/dev/video0", "Slow"), settings)
    assert not result.success
    assert "timed out" in result.error


def test_unreadable_output(settings):
    settings.output_dir.mkdir(parents=True)
    result = SnapshotCoordinator(FakeStrategy(snapshot=SNAPSHOT_GARBAGE)).capture_one(
        CameraConfig("/dev/video0", "Front"), settings)
    assert not result.success
    assert result.error.startswith("unreadable output")


def test_missing_tool(settings):
    settings.output_dir.mkdir(parents=True)
    result = SnapshotCoordinator(FakeStrategy(snapshot=None)).capture_one(
        CameraConfig("/dev/video0", "Front"), settings)
    assert not result.success
    assert "capture tool not found" in result.error


class BrokenForOneCamera(FakeStrategy):
    def build_snapshot_command(self, camera, settings, output_path):
        if camera.device_id == "/dev/video2":
            raise RuntimeError("device table corrupted")
        return super().build_snapshot_command(camera, settings, output_path)


def test_unexpected_error_stays_with_its_camera(settings):
    results = SnapshotCoordinator(BrokenForOneCamera()).capture_all(cameras(), settings)

    assert [r.success for r in results] == [True, True, False]
    assert results[2].error == "RuntimeError: device table corrupted"
    assert summarize(results).splitlines()[0] == "Captured 2 of 3 snapshots."
