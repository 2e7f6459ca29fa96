"""Frame sources: live webcam capture and static stills.

A frame source only answers "what is the camera showing right now"; it has
no knowledge of detection or overlays. ``capture_jpeg`` is the single
encoded-still primitive used by every remote flow.
"""

import cv2
import threading
import time
import logging
import platform
from typing import Optional, Protocol, Tuple
import numpy as np

from ..core.exceptions import InputCaptureError, WebcamError
from ..utils.image_utils import encode_jpeg

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    def get_current_frame(self) -> Optional[np.ndarray]:
        ...

    def capture_jpeg(self) -> bytes:
        ...

    def get_fps(self) -> float:
        ...

    def get_resolution(self) -> Tuple[int, int]:
        ...

    def start_stream(self) -> None:
        ...

    def stop_stream(self) -> None:
        ...


class WebcamService:
    """Service for managing webcam capture and streaming."""

    def __init__(self, camera_index: int = 0, width: int = 1280, height: int = 720,
                 fps: int = 30, jpeg_quality: int = 80):
        """Initialize webcam service.

        Args:
            camera_index: Camera device index
            width: Frame width
            height: Frame height
            fps: Target frames per second
            jpeg_quality: Quality used when encoding stills for remote calls
        """
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.target_fps = fps
        self.jpeg_quality = jpeg_quality

        self._capture: Optional[cv2.VideoCapture] = None
        self._is_streaming = False
        self._stream_thread: Optional[threading.Thread] = None
        self._current_frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._actual_fps = 0.0
        self._frame_count = 0
        self._fps_start_time = time.time()

    def start_stream(self) -> None:
        """Open the camera and start the capture thread.

        Raises:
            WebcamError: If the camera cannot be opened
        """
        if self._is_streaming:
            logger.warning("Stream already running")
            return

        backend = cv2.CAP_DSHOW if platform.system() == "Windows" else cv2.CAP_ANY
        self._capture = cv2.VideoCapture(self.camera_index, backend)

        if not self._capture.isOpened():
            self._cleanup()
            raise WebcamError(f"Failed to open camera {self.camera_index}")

        self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture.set(cv2.CAP_PROP_FPS, self.target_fps)

        actual_width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(f"Camera {self.camera_index} opened: {actual_width}x{actual_height}")

        self._is_streaming = True
        self._fps_start_time = time.time()
        self._frame_count = 0

        self._stream_thread = threading.Thread(target=self._stream_loop, daemon=True)
        self._stream_thread.start()

    def stop_stream(self):
        """Stop webcam streaming and release resources."""
        if not self._is_streaming:
            return

        self._is_streaming = False

        if self._stream_thread and self._stream_thread.is_alive():
            self._stream_thread.join(timeout=2.0)

        self._cleanup()
        logger.info("Stream stopped")

    def _stream_loop(self):
        """Capture loop running in its own thread; only ever swaps the current frame."""
        frame_delay = 1.0 / max(1, self.target_fps)

        while self._is_streaming:
            loop_start = time.time()

            ret, frame = self._capture.read() if self._capture is not None else (False, None)
            if ret and frame is not None:
                with self._frame_lock:
                    self._current_frame = frame

                self._frame_count += 1
                elapsed = time.time() - self._fps_start_time
                if elapsed >= 1.0:
                    self._actual_fps = self._frame_count / elapsed
                    self._frame_count = 0
                    self._fps_start_time = time.time()
            else:
                logger.warning("Failed to read frame from camera")
                time.sleep(0.1)

            sleep_time = frame_delay - (time.time() - loop_start)
            if sleep_time > 0:
                time.sleep(sleep_time)

    def get_current_frame(self) -> Optional[np.ndarray]:
        """Get a copy of the most recent frame, or None if no frame is available."""
        with self._frame_lock:
            return self._current_frame.copy() if self._current_frame is not None else None

    def capture_jpeg(self) -> bytes:
        """Encode the current frame as a JPEG still.

        Raises:
            InputCaptureError: If no frame is available
        """
        frame = self.get_current_frame()
        if frame is None:
            raise InputCaptureError("VISUAL_CAPTURE_FAILED: no camera frame available")
        return encode_jpeg(frame, self.jpeg_quality)

    def get_fps(self) -> float:
        return self._actual_fps

    def get_resolution(self) -> Tuple[int, int]:
        if self._capture and self._capture.isOpened():
            width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            return (width, height)
        return (0, 0)

    def is_streaming(self) -> bool:
        return self._is_streaming

    def _cleanup(self):
        """Clean up camera resources."""
        if self._capture:
            self._capture.release()
            self._capture = None

        with self._frame_lock:
            self._current_frame = None


class StaticFrameSource:
    """Frame source backed by a fixed image (stills, demos and tests)."""

    def __init__(self, frame: Optional[np.ndarray] = None, jpeg_quality: int = 80):
        self._frame = frame
        self.jpeg_quality = jpeg_quality

    @classmethod
    def from_file(cls, path: str, jpeg_quality: int = 80) -> "StaticFrameSource":
        frame = cv2.imread(path)
        if frame is None:
            raise InputCaptureError(f"Could not read image file: {path}")
        return cls(frame, jpeg_quality)

    def set_frame(self, frame: Optional[np.ndarray]) -> None:
        self._frame = frame

    def get_current_frame(self) -> Optional[np.ndarray]:
        return self._frame.copy() if self._frame is not None else None

    def capture_jpeg(self) -> bytes:
        if self._frame is None:
            raise InputCaptureError("VISUAL_CAPTURE_FAILED: no frame available")
        return encode_jpeg(self._frame, self.jpeg_quality)

    def get_fps(self) -> float:
        return 0.0

    def get_resolution(self) -> Tuple[int, int]:
        if self._frame is None:
            return (0, 0)
        height, width = self._frame.shape[:2]
        return (width, height)

    def start_stream(self) -> None:
        pass

    def stop_stream(self) -> None:
        pass
