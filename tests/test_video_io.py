"""
Tests for frame output sinks.

Tests hardware encoder detection, the FFmpeg writer, raw streaming and PNG
output.
"""

import io
import subprocess
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from PIL import Image

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from video_io import (
    FFmpegWriter,
    OutputSinkError,
    PngSink,
    RawStreamSink,
    detect_hw_encoder,
    save_png,
)
import video_io


def rgba_frame(width=4, height=3, value=7):
    return np.full((height, width, 4), value, dtype=np.uint8)


class TestHardwareEncoderDetection:
    """Tests for hardware encoder detection."""

    def setup_method(self):
        """Reset the encoder cache before each test."""
        video_io._hw_encoder_cache = None
        video_io._hw_encoder_checked = False

    def teardown_method(self):
        video_io._hw_encoder_cache = None
        video_io._hw_encoder_checked = False

    def test_detection_caches_result(self):
        """Encoder detection should only query ffmpeg once."""
        with patch('video_io.subprocess.run') as mock_run:
            mock_run.return_value = MagicMock(returncode=1)

            result1 = detect_hw_encoder()
            calls = mock_run.call_count
            result2 = detect_hw_encoder()

            assert result1 == result2
            assert mock_run.call_count == calls

    @patch('video_io.platform.system')
    @patch('video_io.subprocess.run')
    def test_macos_detects_videotoolbox(self, mock_run, mock_system):
        """On macOS, should detect h264_videotoolbox."""
        mock_system.return_value = "Darwin"
        mock_run.return_value = MagicMock(returncode=0)

        assert detect_hw_encoder() == "h264_videotoolbox"

    @patch('video_io.platform.system')
    @patch('video_io.subprocess.run')
    def test_linux_detects_nvenc(self, mock_run, mock_system):
        """On Linux with NVIDIA, should detect h264_nvenc."""
        mock_system.return_value = "Linux"
        mock_run.return_value = MagicMock(returncode=0)

        assert detect_hw_encoder() == "h264_nvenc"

    @patch('video_io.platform.system')
    @patch('video_io.subprocess.run')
    def test_windows_falls_through_to_qsv(self, mock_run, mock_system):
        """On Windows without NVENC, Quick Sync should be tried next."""
        mock_system.return_value = "Windows"
        mock_run.side_effect = [MagicMock(returncode=1), MagicMock(returncode=0)]

        assert detect_hw_encoder() == "h264_qsv"

    @patch('video_io.platform.system')
    @patch('video_io.subprocess.run')
    def test_fallback_to_none_when_no_hw_encoder(self, mock_run, mock_system):
        """Should return None when no hardware encoder available."""
        mock_system.return_value = "Darwin"
        mock_run.return_value = MagicMock(returncode=1)

        assert detect_hw_encoder() is None

    @patch('video_io.platform.system')
    @patch('video_io.subprocess.run')
    def test_missing_ffmpeg(self, mock_run, mock_system):
        """A missing ffmpeg binary means no hardware encoder."""
        mock_system.return_value = "Linux"
        mock_run.side_effect = FileNotFoundError("ffmpeg")

        assert detect_hw_encoder() is None


class TestFFmpegWriter:
    """Tests for FFmpegWriter class."""

    def test_default_uses_hw_encoding_flag(self):
        """Writer should have hardware encoding enabled by default."""
        writer = FFmpegWriter("/tmp/test.mp4", (1920, 1080), 30.0)

        assert writer.use_hw_encoding is True
        assert writer.frame_bytes == 1920 * 1080 * 4

    @patch('video_io.detect_hw_encoder')
    def test_uses_libx264_when_hw_disabled(self, mock_detect):
        """Should use libx264 when hardware encoding is disabled."""
        writer = FFmpegWriter("/tmp/test.mp4", (1920, 1080), 30.0, use_hw_encoding=False)
        args = writer._build_encoder_args()

        idx = args.index("-c:v")
        assert args[idx + 1] == "libx264"
        assert "-crf" in args
        mock_detect.assert_not_called()

    @patch('video_io.detect_hw_encoder')
    def test_videotoolbox_args(self, mock_detect):
        """VideoToolbox should use bitrate-based encoding."""
        mock_detect.return_value = "h264_videotoolbox"

        writer = FFmpegWriter("/tmp/test.mp4", (1920, 1080), 30.0)
        args = writer._build_encoder_args()

        assert args[args.index("-c:v") + 1] == "h264_videotoolbox"
        assert "10M" in args
        assert writer.encoder == "h264_videotoolbox"

    @patch('video_io.detect_hw_encoder')
    def test_nvenc_args(self, mock_detect):
        """NVENC should use a preset and bitrate."""
        mock_detect.return_value = "h264_nvenc"

        writer = FFmpegWriter("/tmp/test.mp4", (1920, 1080), 30.0)
        args = writer._build_encoder_args()

        assert args[args.index("-c:v") + 1] == "h264_nvenc"
        assert "-preset" in args

    @patch('video_io.detect_hw_encoder', return_value=None)
    @patch('video_io.subprocess.Popen')
    def test_open_pipes_rgba_rawvideo(self, mock_popen, mock_detect):
        """The ffmpeg command should read rgba rawvideo of the frame size from stdin."""
        writer = FFmpegWriter("/tmp/out.mp4", (640, 360), 24.0).open()
        cmd = mock_popen.call_args.args[0]

        assert cmd[cmd.index("-pix_fmt") + 1] == "rgba"
        assert cmd[cmd.index("-s") + 1] == "640x360"
        assert cmd[cmd.index("-r") + 1] == "24.0"
        assert cmd[cmd.index("-i") + 1] == "-"
        assert cmd[-1] == "/tmp/out.mp4"
        assert writer.process is mock_popen.return_value

    @patch('video_io.detect_hw_encoder', return_value=None)
    @patch('video_io.subprocess.Popen')
    def test_write_sends_frame_bytes(self, mock_popen, mock_detect):
        """Frames should be written to ffmpeg's stdin as raw bytes."""
        process = mock_popen.return_value
        process.returncode = 0
        with FFmpegWriter("/tmp/out.mp4", (4, 3)) as writer:
            writer.write(rgba_frame())
            assert writer.frames_written == 1

        process.stdin.write.assert_called_once_with(rgba_frame().tobytes())
        process.stdin.close.assert_called_once()

    @patch('video_io.detect_hw_encoder', return_value=None)
    @patch('video_io.subprocess.Popen', side_effect=FileNotFoundError("ffmpeg"))
    def test_missing_ffmpeg_is_sink_error(self, mock_popen, mock_detect):
        """Failing to start ffmpeg should raise OutputSinkError."""
        with pytest.raises(OutputSinkError, match="Could not start ffmpeg"):
            FFmpegWriter("/tmp/out.mp4", (4, 3)).open()

    @patch('video_io.detect_hw_encoder', return_value=None)
    @patch('video_io.subprocess.Popen')
    def test_nonzero_exit_is_sink_error(self, mock_popen, mock_detect):
        """ffmpeg failing to finish the file should raise on close."""
        process = mock_popen.return_value
        process.returncode = 1
        process.stderr = io.BytesIO(b"Invalid argument")
        writer = FFmpegWriter("/tmp/out.mp4", (4, 3)).open()

        with pytest.raises(OutputSinkError, match="status 1"):
            writer.close()

    @patch('video_io.detect_hw_encoder', return_value=None)
    @patch('video_io.subprocess.Popen')
    def test_close_timeout_kills_process(self, mock_popen, mock_detect):
        """A hung ffmpeg should be killed on close."""
        process = mock_popen.return_value
        process.wait.side_effect = subprocess.TimeoutExpired("ffmpeg", 30)
        writer = FFmpegWriter("/tmp/out.mp4", (4, 3)).open()

        with pytest.raises(OutputSinkError):
            writer.close()
        process.kill.assert_called_once()

    def test_write_before_open(self):
        """Writing to an unopened writer is an output error."""
        with pytest.raises(OutputSinkError, match="not open"):
            FFmpegWriter("/tmp/out.mp4", (4, 3)).write(rgba_frame())

    def test_close_without_open_is_noop(self):
        """Closing an unopened writer should do nothing."""
        FFmpegWriter("/tmp/out.mp4", (4, 3)).close()


class TestRawStreamSink:
    """Tests for raw RGBA streaming."""

    def test_frames_concatenated(self):
        """Frames should be written back to back with no framing."""
        stream = io.BytesIO()
        sink = RawStreamSink(stream, (4, 3))
        sink.write(rgba_frame(value=1))
        sink.write(rgba_frame(value=2))

        data = stream.getvalue()
        assert len(data) == 2 * sink.frame_bytes
        assert data[:sink.frame_bytes] == bytes([1]) * 48
        assert data[sink.frame_bytes:] == bytes([2]) * 48
        assert sink.frames_written == 2

    def test_size_mismatch_rejected(self):
        """Frames of the wrong size should raise ValueError."""
        sink = RawStreamSink(io.BytesIO(), (4, 3))
        with pytest.raises(ValueError, match="size mismatch"):
            sink.write(rgba_frame(width=5))
        assert sink.frames_written == 0

    def test_broken_pipe_propagates(self):
        """A closed downstream reader surfaces as BrokenPipeError."""
        stream = MagicMock()
        stream.write.side_effect = BrokenPipeError()
        sink = RawStreamSink(stream, (4, 3))
        with pytest.raises(BrokenPipeError):
            sink.write(rgba_frame())


class TestPngSink:
    """Tests for PNG output."""

    def test_plain_path_holds_latest_frame(self, tmp_path):
        """A path without {seq} is overwritten by every frame."""
        path = tmp_path / "heatmap.png"
        sink = PngSink(path, (4, 3))
        sink.write(rgba_frame(value=10))
        sink.write(rgba_frame(value=20))

        with Image.open(path) as img:
            assert img.mode == "RGBA"
            assert img.size == (4, 3)
            assert img.getpixel((0, 0)) == (20, 20, 20, 20)

    def test_numbered_frames(self, tmp_path):
        """{seq} in the path gives one numbered file per frame."""
        sink = PngSink(tmp_path / "frame_{seq}.png", (4, 3))
        sink.write(rgba_frame())
        sink.write(rgba_frame())

        assert sorted(p.name for p in tmp_path.iterdir()) == ["frame_000001.png", "frame_000002.png"]

    def test_save_png_rgb(self, tmp_path):
        """save_png should accept 3-channel buffers."""
        path = tmp_path / "rgb.png"
        save_png(path, np.zeros((2, 2, 3), dtype=np.uint8))
        with Image.open(path) as img:
            assert img.mode == "RGB"

    def test_unwritable_path(self, tmp_path):
        """Writing into a missing directory should raise OSError."""
        sink = PngSink(tmp_path / "missing" / "out.png", (4, 3))
        with pytest.raises(OSError):
            sink.write(rgba_frame())
