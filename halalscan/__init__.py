"""Halal food scanner: capture, classify and remember product scans."""

from .camera import (
    CaptureError,
    CaptureMode,
    CaptureSession,
    CaptureState,
    DeviceUnavailable,
    NoCameraAPI,
    OpenCVStreamProvider,
    PermissionDenied,
    PromptHostBridge,
    mode_for_press,
)
from .classifier import ClassificationBackend, create_backend
from .config import ScanConfig, load_config
from .entitlement import FREE_SCANS_LIMIT, EntitlementState
from .errors import ScanError, ScanFailureKind, user_message
from .history import HistoryStore
from .models import (
    CaptureCapabilities,
    EntitlementSnapshot,
    HalalStatus,
    ImageAsset,
    IngredientDetail,
    ScanHistoryItem,
    ScanRequest,
    ScanResult,
)
from .orchestrator import ScanOutcome, ScanPhase, ScanRequestOrchestrator, ScanSessionState
from .pipeline import ScanPipeline
from .store import SecureStorage, StorageQuotaExceeded, StorageWriteFailed

__all__ = [
    "CaptureSession",
    "CaptureState",
    "CaptureMode",
    "CaptureCapabilities",
    "CaptureError",
    "PermissionDenied",
    "DeviceUnavailable",
    "NoCameraAPI",
    "OpenCVStreamProvider",
    "PromptHostBridge",
    "mode_for_press",
    "ClassificationBackend",
    "create_backend",
    "ScanConfig",
    "load_config",
    "FREE_SCANS_LIMIT",
    "EntitlementState",
    "EntitlementSnapshot",
    "ScanError",
    "ScanFailureKind",
    "user_message",
    "HistoryStore",
    "ScanHistoryItem",
    "HalalStatus",
    "ImageAsset",
    "IngredientDetail",
    "ScanRequest",
    "ScanResult",
    "ScanOutcome",
    "ScanPhase",
    "ScanRequestOrchestrator",
    "ScanSessionState",
    "ScanPipeline",
    "SecureStorage",
    "StorageQuotaExceeded",
    "StorageWriteFailed",
]
