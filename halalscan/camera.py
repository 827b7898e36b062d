"""Live camera capture with graceful degradation to a host-native picker."""

from __future__ import annotations

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from .imaging import encode_jpeg, load_image
from .models import CaptureCapabilities, ImageAsset

logger = logging.getLogger(__name__)

LONG_PRESS_MS = 800


class CaptureState(str, Enum):
    UNINITIALIZED = "uninitialized"
    REQUESTING_PERMISSION = "requesting_permission"
    STREAM_ACTIVE = "stream_active"
    CAPTURING = "capturing"
    DEGRADED = "degraded"
    CLOSED = "closed"


class CaptureMode(str, Enum):
    CAPTURE_AND_CLOSE = "capture_and_close"
    CAPTURE_AND_HOLD = "capture_and_hold"


class PermissionState(str, Enum):
    GRANTED = "granted"
    LIMITED = "limited"
    DENIED = "denied"
    PROMPT = "prompt"


def mode_for_press(held_ms: float, threshold_ms: float = LONG_PRESS_MS) -> CaptureMode:
    """A long press keeps the camera open for another shot."""
    if held_ms >= threshold_ms:
        return CaptureMode.CAPTURE_AND_HOLD
    return CaptureMode.CAPTURE_AND_CLOSE


class CaptureError(Exception):
    """Base class for capture failures. ``remediation`` tells the UI what to offer."""

    remediation = ""


class PermissionDenied(CaptureError):
    remediation = "grant_permission"


class DeviceUnavailable(CaptureError):
    remediation = "use_fallback"


class NoCameraAPI(CaptureError):
    remediation = "unsupported"


class StreamOpenError(Exception):
    """Raised by a StreamProvider. ``permission`` marks an access refusal."""

    def __init__(self, message: str, *, permission: bool = False) -> None:
        super().__init__(message)
        self.permission = permission


@dataclass(frozen=True)
class StreamConstraints:
    facing_mode: str | None = "environment"
    ideal_width: int | None = 1280
    ideal_height: int | None = 720


GENERIC_CONSTRAINTS = StreamConstraints(facing_mode=None, ideal_width=None, ideal_height=None)


class VideoStream(ABC):
    """One open video stream."""

    @abstractmethod
    def read_frame(self) -> np.ndarray | None:
        """Return the current frame at native resolution, or None."""
        ...

    @abstractmethod
    def capabilities(self) -> dict:
        """Raw capability description, e.g. ``{"torch": True, "zoom": {"min": 1, "max": 4}}``."""
        ...

    @abstractmethod
    def apply_constraints(self, **constraints) -> None:
        """Apply ``zoom=`` / ``torch=`` constraints. Raises on failure."""
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class StreamProvider(ABC):
    """Opens video streams on the current platform."""

    @property
    @abstractmethod
    def available(self) -> bool:
        """Whether a live-camera API exists at all."""
        ...

    @abstractmethod
    async def open(self, constraints: StreamConstraints) -> VideoStream:
        """Open a stream. Raises StreamOpenError on failure."""
        ...


class HostBridge(ABC):
    """Host-native services: camera permission and the system photo picker."""

    @property
    @abstractmethod
    def is_native(self) -> bool:
        ...

    @abstractmethod
    async def request_permission(self) -> PermissionState:
        ...

    @abstractmethod
    async def pick_photo(self) -> ImageAsset | None:
        """Let the operator take or choose one photo. None when cancelled."""
        ...


class OpenCVStream(VideoStream):
    """A ``cv2.VideoCapture`` handle.

    OpenCV exposes no torch control, and zoom only where the driver
    implements ``CAP_PROP_ZOOM``.
    """

    def __init__(self, cap, max_zoom: float | None = None) -> None:
        self._cap = cap
        self._max_zoom = max_zoom

    def read_frame(self) -> np.ndarray | None:
        ret, frame = self._cap.read()
        if not ret or frame is None:
            return None
        return frame

    def capabilities(self) -> dict:
        import cv2

        current = self._cap.get(cv2.CAP_PROP_ZOOM)
        if current and current > 0:
            return {"zoom": {"min": current, "max": self._max_zoom or current}}
        return {}

    def apply_constraints(self, **constraints) -> None:
        import cv2

        if "torch" in constraints:
            raise RuntimeError("torch control is not available through OpenCV")
        if "zoom" in constraints:
            if not self._cap.set(cv2.CAP_PROP_ZOOM, float(constraints["zoom"])):
                raise RuntimeError("camera rejected the zoom setting")

    def stop(self) -> None:
        self._cap.release()


class OpenCVStreamProvider(StreamProvider):
    """Open USB/built-in cameras through OpenCV."""

    def __init__(self, camera_index: int = 0, max_zoom: float | None = None) -> None:
        self._camera_index = camera_index
        self._max_zoom = max_zoom

    @property
    def available(self) -> bool:
        try:
            import cv2  # noqa: F401
        except ImportError:
            return False
        return True

    async def open(self, constraints: StreamConstraints) -> VideoStream:
        import cv2

        def _open() -> VideoStream:
            cap = cv2.VideoCapture(self._camera_index)
            if not cap.isOpened():
                cap.release()
                raise StreamOpenError(
                    f"Could not open camera {self._camera_index}. Check the connection."
                )
            if constraints.ideal_width:
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.ideal_width)
            if constraints.ideal_height:
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.ideal_height)
            return OpenCVStream(cap, max_zoom=self._max_zoom)

        return await asyncio.to_thread(_open)

    @staticmethod
    def list_cameras(max_check: int = 10) -> list[int]:
        """List available camera indices by probing."""
        try:
            import cv2
        except ImportError:
            raise ImportError(
                "opencv-python is required: pip install opencv-python"
            ) from None

        available: list[int] = []
        for i in range(max_check):
            cap = cv2.VideoCapture(i)
            if cap.isOpened():
                available.append(i)
            cap.release()
        return available


class PromptHostBridge(HostBridge):
    """Terminal stand-in for the system picker: asks for an image path on stdin."""

    @property
    def is_native(self) -> bool:
        return False

    async def request_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    async def pick_photo(self) -> ImageAsset | None:
        print("Enter the path of a product photo (leave empty to cancel):")
        sys.stdout.flush()
        path = (await asyncio.to_thread(input, "> ")).strip()
        if not path:
            return None
        return load_image(path)


class CaptureSession:
    """Owns one live camera stream from acquisition to teardown.

    ``close()`` may be called at any time, including while ``open()`` is still
    waiting on the platform. A stream that resolves after the session was
    closed is released immediately and never presented.
    """

    def __init__(
        self,
        provider: StreamProvider,
        host: HostBridge | None = None,
        *,
        ideal_width: int = 1280,
        ideal_height: int = 720,
        jpeg_quality: int = 95,
        long_press_ms: float = LONG_PRESS_MS,
        on_feedback: Callable[[str], None] | None = None,
    ) -> None:
        self._provider = provider
        self._host = host
        self._constraints = StreamConstraints(
            facing_mode="environment", ideal_width=ideal_width, ideal_height=ideal_height
        )
        self._jpeg_quality = jpeg_quality
        self._long_press_ms = long_press_ms
        self._on_feedback = on_feedback
        self._state = CaptureState.UNINITIALIZED
        self._stream: VideoStream | None = None
        self._capabilities = CaptureCapabilities()
        self._capturing = False
        self._closed = False
        self._error: CaptureError | None = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def capabilities(self) -> CaptureCapabilities:
        return self._capabilities

    @property
    def error(self) -> CaptureError | None:
        return self._error

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    async def __aenter__(self) -> CaptureSession:
        try:
            await self.open()
        except CaptureError as e:
            logger.warning("Live camera unavailable (%s): %s", e.remediation, e)
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def _degrade(self, error: CaptureError) -> CaptureError:
        self._state = CaptureState.DEGRADED
        self._error = error
        logger.warning("Capture session degraded: %s", error)
        return error

    async def open(self) -> CaptureState:
        """Acquire the camera stream.

        Raises:
            PermissionDenied: If the host or the platform refused access.
            NoCameraAPI: If no live-camera API exists.
            DeviceUnavailable: If no stream could be opened.
        """
        if self._closed:
            return self._state

        self._state = CaptureState.REQUESTING_PERMISSION
        self._error = None

        if self._host is not None and self._host.is_native:
            try:
                permission = await self._host.request_permission()
            except Exception as e:
                logger.warning("Native permission request failed: %s", e)
                permission = None
            if self._closed:
                return self._state
            if permission is not None and permission not in (
                PermissionState.GRANTED,
                PermissionState.LIMITED,
            ):
                raise self._degrade(
                    PermissionDenied("Camera permission was not granted. Enable it in settings.")
                )

        if not self._provider.available:
            if self._host is not None and self._host.is_native:
                message = "Live camera could not be opened. Use the system camera instead."
            else:
                message = "This platform has no live camera support."
            raise self._degrade(NoCameraAPI(message))

        try:
            stream = await self._provider.open(self._constraints)
        except Exception as first:
            logger.warning("Camera start failed with preferred constraints: %s", first)
            if self._closed:
                return self._state
            try:
                stream = await self._provider.open(GENERIC_CONSTRAINTS)
            except Exception as second:
                if self._closed:
                    return self._state
                if getattr(second, "permission", False) or getattr(first, "permission", False):
                    raise self._degrade(
                        PermissionDenied("Camera access was denied. Enable it in settings.")
                    ) from second
                raise self._degrade(
                    DeviceUnavailable("No usable camera was found. Use the system camera instead.")
                ) from second

        if self._closed:
            logger.debug("Session closed while the stream was opening, releasing it")
            stream.stop()
            return self._state

        self._stream = stream
        self._capabilities = self._probe(stream)
        self._state = CaptureState.STREAM_ACTIVE
        return self._state

    @staticmethod
    def _probe(stream: VideoStream) -> CaptureCapabilities:
        try:
            raw = stream.capabilities() or {}
        except Exception as e:
            logger.warning("Capabilities check failed: %s", e)
            return CaptureCapabilities()

        caps = CaptureCapabilities(has_torch=bool(raw.get("torch")))
        zoom = raw.get("zoom")
        if isinstance(zoom, dict):
            caps.has_zoom = True
            caps.min_zoom = float(zoom.get("min") or 1.0)
            caps.max_zoom = float(zoom.get("max") or caps.min_zoom)
            caps.zoom_level = caps.min_zoom
        return caps

    def close(self) -> None:
        """Stop the stream. Idempotent."""
        self._closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.warning("Stopping camera stream failed: %s", e)
        self._capabilities = CaptureCapabilities()
        self._state = CaptureState.CLOSED

    def _emit(self, event: str) -> None:
        if self._on_feedback is not None:
            self._on_feedback(event)

    async def capture(
        self, mode: CaptureMode = CaptureMode.CAPTURE_AND_CLOSE
    ) -> ImageAsset | None:
        """Grab the current frame as a JPEG ImageAsset.

        Returns None when the session has no active stream, when another
        capture is already in flight, or when no frame is available. In the
        degraded state this redirects to ``fallback_capture()``.
        """
        if self._state is CaptureState.DEGRADED:
            return await self.fallback_capture()
        if self._capturing:
            logger.debug("Capture already in progress, ignoring")
            return None
        stream = self._stream
        if self._state is not CaptureState.STREAM_ACTIVE or stream is None:
            return None

        self._capturing = True
        self._state = CaptureState.CAPTURING
        try:
            frame = await asyncio.to_thread(stream.read_frame)
            if self._closed:
                return None
            if frame is None:
                logger.warning("Camera returned no frame")
                return None
            asset = encode_jpeg(frame, self._jpeg_quality)
        finally:
            self._capturing = False
            if self._state is CaptureState.CAPTURING:
                self._state = CaptureState.STREAM_ACTIVE

        if mode is CaptureMode.CAPTURE_AND_HOLD:
            self._emit("image_added")
        else:
            self._emit("captured")
            self.close()
        return asset

    async def capture_for_press(self, held_ms: float) -> ImageAsset | None:
        """Capture for a shutter press, holding the stream open on a long press."""
        return await self.capture(mode_for_press(held_ms, self._long_press_ms))

    async def set_zoom(self, level: float) -> bool:
        """Apply a zoom level. Returns False when unsupported or rejected."""
        stream = self._stream
        if stream is None or not self._capabilities.has_zoom:
            return False
        level = min(max(level, self._capabilities.min_zoom), self._capabilities.max_zoom)
        try:
            await asyncio.to_thread(stream.apply_constraints, zoom=level)
        except Exception as e:
            logger.warning("Zoom failed: %s", e)
            return False
        self._capabilities.zoom_level = level
        return True

    async def toggle_torch(self) -> bool:
        """Switch the torch. Returns False when unsupported or rejected."""
        stream = self._stream
        if stream is None or not self._capabilities.has_torch:
            return False
        target = not self._capabilities.torch_on
        try:
            await asyncio.to_thread(stream.apply_constraints, torch=target)
        except Exception as e:
            logger.warning("Torch toggle failed: %s", e)
            return False
        self._capabilities.torch_on = target
        return True

    async def fallback_capture(self) -> ImageAsset | None:
        """Delegate to the host-native picker. Cancellation yields None."""
        if self._host is None:
            logger.info("No host photo picker available")
            return None
        try:
            return await self._host.pick_photo()
        except (OSError, ValueError) as e:
            logger.warning("Host photo picker failed: %s", e)
            return None
