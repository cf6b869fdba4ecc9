"""
Frame output sinks.

Streamed frames leave the renderer as fixed-size raw RGBA buffers, with no
framing beyond the known viewport dimensions. Sinks:

- RawStreamSink: raw bytes to a binary stream (stdout for external encoders)
- FFmpegWriter: raw bytes piped into an FFmpeg subprocess encoding H.264,
  with hardware encoding when available (VideoToolbox on macOS, NVENC on
  NVIDIA GPUs) and automatic fallback to libx264
- PngSink: every frame saved as a PNG image (static mode writes exactly one)

Every write blocks until the downstream consumer accepts the bytes; that is
the pipeline's only flow-control point.
"""

import logging
import platform
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple, Union

import numpy as np
from PIL import Image

from constants import DEFAULT_VIDEO_FPS

logger = logging.getLogger(__name__)


# Cache for detected hardware encoder
_hw_encoder_cache: Optional[str] = None
_hw_encoder_checked: bool = False


class OutputSinkError(RuntimeError):
    """Writing a frame to the output sink failed. Fatal for the run."""


def detect_hw_encoder() -> Optional[str]:
    """
    Detect available hardware encoder for H.264.

    Checks for platform-specific hardware encoders in order of preference:
    - macOS: h264_videotoolbox (Apple VideoToolbox)
    - NVIDIA: h264_nvenc (NVIDIA NVENC)
    - Intel on Windows: h264_qsv (Quick Sync)

    Returns:
        Encoder name if available, None if only software encoding available
    """
    global _hw_encoder_cache, _hw_encoder_checked

    if _hw_encoder_checked:
        return _hw_encoder_cache

    _hw_encoder_checked = True

    system = platform.system()
    if system == "Darwin":
        candidates = ["h264_videotoolbox"]
    elif system == "Linux":
        candidates = ["h264_nvenc"]
    elif system == "Windows":
        candidates = ["h264_nvenc", "h264_qsv"]
    else:
        candidates = []

    for encoder in candidates:
        try:
            cmd = [
                "ffmpeg", "-v", "error",
                "-f", "lavfi", "-i", "nullsrc=s=64x64:d=1",
                "-c:v", encoder,
                "-f", "null", "-"
            ]
            result = subprocess.run(cmd, capture_output=True, timeout=5)
            if result.returncode == 0:
                logger.info(f"Hardware encoder detected: {encoder}")
                _hw_encoder_cache = encoder
                return encoder
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
            continue

    logger.debug("No hardware encoder available, using libx264")
    return None


def save_png(path: Union[str, Path], pixels: np.ndarray) -> None:
    """Write an RGBA (or RGB) uint8 buffer as a PNG file."""
    Image.fromarray(np.ascontiguousarray(pixels)).save(str(path), format="PNG")


class FrameSink(ABC):
    """
    Destination for emitted frames.

    Frames arrive in strictly increasing sequence order, one at a time.
    Subclasses raise OSError or ValueError when a frame cannot be written.

    Args:
        size: Frame dimensions (width, height)
    """

    def __init__(self, size: Tuple[int, int]):
        self.width, self.height = size
        self._frame_count = 0

    @property
    def frames_written(self) -> int:
        return self._frame_count

    @property
    def frame_bytes(self) -> int:
        """Size of one raw RGBA frame in bytes."""
        return self.width * self.height * 4

    def _check_frame(self, frame: np.ndarray) -> None:
        if frame.shape != (self.height, self.width, 4):
            raise ValueError(f"Frame size mismatch: expected {self.width}x{self.height}x4, "
                             f"got {'x'.join(str(d) for d in frame.shape)}")

    def write(self, frame: np.ndarray) -> None:
        """Write one RGBA frame (height x width x 4, uint8)."""
        self._check_frame(frame)
        self._write(frame)
        self._frame_count += 1

    @abstractmethod
    def _write(self, frame: np.ndarray) -> None:
        """Deliver a validated frame."""

    def close(self) -> None:
        """Flush and release the sink."""

    def __enter__(self) -> 'FrameSink':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class RawStreamSink(FrameSink):
    """
    Raw RGBA bytes to a binary stream, one frame after another.

    Args:
        stream: Writable binary stream (e.g. sys.stdout.buffer)
        size: Frame dimensions (width, height)
    """

    def __init__(self, stream: BinaryIO, size: Tuple[int, int]):
        super().__init__(size)
        self.stream = stream

    def _write(self, frame: np.ndarray) -> None:
        self.stream.write(np.ascontiguousarray(frame).tobytes())
        self.stream.flush()

    def close(self) -> None:
        self.stream.flush()
        logger.debug(f"Raw stream closed after {self._frame_count} frames")


class PngSink(FrameSink):
    """
    Saves frames as PNG images.

    A path containing "{seq}" yields one numbered file per frame. A plain
    path is overwritten, so it holds the latest frame.
    """

    def __init__(self, path: Union[str, Path], size: Tuple[int, int]):
        super().__init__(size)
        self.path = str(path)

    def path_for(self, seq: int) -> str:
        return self.path.replace("{seq}", f"{seq:06d}")

    def _write(self, frame: np.ndarray) -> None:
        path = self.path_for(self._frame_count + 1)
        save_png(path, frame)
        logger.debug(f"Saved frame {self._frame_count + 1} to {path}")


class FFmpegWriter(FrameSink):
    """
    Context manager for writing frames via FFmpeg pipe.

    Accepts RGBA numpy arrays and encodes to H.264.

    Supports hardware-accelerated encoding when available:
    - macOS: VideoToolbox (h264_videotoolbox)
    - NVIDIA: NVENC (h264_nvenc)
    - Fallback: libx264 (software)

    Args:
        path: Output file path
        fps: Frame rate
        size: Video dimensions (width, height)
        use_hw_encoding: Try hardware encoding (default True, falls back to software)
    """

    def __init__(self, path: str, size: Tuple[int, int], fps: float = DEFAULT_VIDEO_FPS,
                 use_hw_encoding: bool = True):
        super().__init__(size)
        self.path = path
        self.fps = fps
        self.use_hw_encoding = use_hw_encoding
        self.process: Optional[subprocess.Popen] = None
        self._encoder_used: str = "libx264"

    def _build_encoder_args(self) -> List[str]:
        """Build encoder-specific FFmpeg arguments."""
        hw_encoder = detect_hw_encoder() if self.use_hw_encoding else None

        if hw_encoder == "h264_videotoolbox":
            self._encoder_used = hw_encoder
            return [
                "-c:v", "h264_videotoolbox",
                "-b:v", "10M",
                "-pix_fmt", "yuv420p",
            ]
        elif hw_encoder in ("h264_nvenc", "h264_qsv"):
            self._encoder_used = hw_encoder
            return [
                "-c:v", hw_encoder,
                "-preset", "fast",
                "-b:v", "10M",
                "-pix_fmt", "yuv420p",
            ]
        else:
            # Software encoding fallback
            self._encoder_used = "libx264"
            return [
                "-c:v", "libx264",
                "-preset", "fast",
                "-crf", "23",
                "-pix_fmt", "yuv420p",
            ]

    def open(self) -> 'FFmpegWriter':
        encoder_args = self._build_encoder_args()

        cmd = [
            "ffmpeg", "-y", "-v", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-s", f"{self.width}x{self.height}",
            "-r", str(self.fps),
            "-i", "-",
        ] + encoder_args + [
            "-movflags", "+faststart",
            self.path
        ]
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=self.frame_bytes * 2
            )
        except OSError as e:
            raise OutputSinkError(f"Could not start ffmpeg: {e}") from e
        logger.debug(f"Opened FFmpegWriter: {self.path} (encoder: {self._encoder_used})")
        return self

    def __enter__(self) -> 'FFmpegWriter':
        return self.open()

    @property
    def encoder(self) -> str:
        """Return the encoder being used (e.g., 'libx264', 'h264_videotoolbox')."""
        return self._encoder_used

    def _write(self, frame: np.ndarray) -> None:
        if self.process is None or self.process.stdin is None:
            raise OutputSinkError(f"FFmpeg writer for {self.path} is not open")
        self.process.stdin.write(np.ascontiguousarray(frame).tobytes())

    def close(self) -> None:
        if self.process is None:
            return
        process, self.process = self.process, None
        try:
            if process.stdin:
                process.stdin.close()
            process.wait(timeout=30)
        except BrokenPipeError:
            process.wait(timeout=30)
        except subprocess.TimeoutExpired:
            logger.warning("FFmpeg writer timeout, killing process")
            process.kill()
            raise OutputSinkError(f"ffmpeg did not finish writing {self.path}")
        logger.debug(f"Released FFmpegWriter: {self.path} ({self._frame_count} frames)")
        if process.returncode != 0:
            stderr = process.stderr.read() if process.stderr else b''
            logger.error(f"FFmpeg writer failed: {stderr.decode(errors='replace')}")
            raise OutputSinkError(f"ffmpeg exited with status {process.returncode} writing {self.path}")
