"""Wires capture, scan and history together for one user session."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from . import imaging
from .camera import CaptureMode, CaptureSession, HostBridge, OpenCVStreamProvider, StreamProvider
from .classifier import ClassificationBackend, create_backend
from .config import ScanConfig
from .entitlement import (
    EntitlementState,
    SupabaseEntitlementStore,
    SupabaseIdentityProvider,
)
from .history import HistoryStore
from .models import ImageAsset
from .orchestrator import ScanOutcome, ScanRequestOrchestrator, ScanSessionState
from .store import SecureStorage

logger = logging.getLogger(__name__)


def build_entitlement(config: ScanConfig, storage: SecureStorage) -> EntitlementState:
    """Create the entitlement state, remote-backed when Supabase is configured."""
    ent = config.entitlement
    store = None
    identity_provider = None
    if ent.supabase_url and ent.supabase_anon_key:
        store = SupabaseEntitlementStore(ent.supabase_url, ent.supabase_anon_key)
        identity_provider = SupabaseIdentityProvider(
            ent.supabase_url, ent.supabase_anon_key, storage
        )
    else:
        logger.info("Supabase is not configured, counting scans locally")
    return EntitlementState(
        store,
        identity_provider,
        storage,
        free_limit=ent.free_limit,
        offline_unmetered=ent.offline_unmetered,
    )


class ScanPipeline:
    """The caller side of a scan: owns the session state and the busy flag.

    Successful results are written to history here, so the orchestrator
    stays free of storage side effects.
    """

    def __init__(
        self,
        config: ScanConfig,
        *,
        storage: SecureStorage | None = None,
        backend: ClassificationBackend | None = None,
        entitlement: EntitlementState | None = None,
        provider: StreamProvider | None = None,
        host: HostBridge | None = None,
        on_progress: Callable[[float], None] | None = None,
        on_feedback: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self.storage = storage or SecureStorage(
            config.storage.db_path, quota_bytes=config.storage.quota_bytes
        )
        self.history = HistoryStore(self.storage, capacity=config.storage.history_capacity)
        self.entitlement = entitlement or build_entitlement(config, self.storage)
        self.state = ScanSessionState(max_images=config.session.max_images)
        self.orchestrator = ScanRequestOrchestrator(
            backend or create_backend(config),
            self.entitlement,
            state=self.state,
            enhance=config.imaging.enhance,
            contrast=config.imaging.contrast,
            language=config.session.language,
            tick_interval=config.session.progress_interval,
            on_progress=on_progress,
        )
        self._provider = provider or OpenCVStreamProvider(config.camera.index)
        self._host = host
        self._on_feedback = on_feedback

    async def start(self) -> None:
        """Load history and cached entitlement, then resolve the remote record."""
        self.history.load()
        await self.entitlement.bootstrap()

    def close(self) -> None:
        self.orchestrator.reset()
        self.storage.close()

    async def __aenter__(self) -> ScanPipeline:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def open_camera(self) -> CaptureSession:
        cam = self.config.camera
        return CaptureSession(
            self._provider,
            self._host,
            ideal_width=cam.ideal_width,
            ideal_height=cam.ideal_height,
            jpeg_quality=cam.jpeg_quality,
            long_press_ms=cam.long_press_ms,
            on_feedback=self._on_feedback,
        )

    def add_image(self, image: ImageAsset) -> bool:
        added = self.state.add_image(image)
        if not added:
            logger.info("Already holding %d images, ignoring", self.state.max_images)
        return added

    async def capture_images(self, shots: int = 1) -> list[ImageAsset]:
        """Take up to ``shots`` photos, holding the camera open between them."""
        shots = max(1, min(shots, self.state.max_images - len(self.state.images)))
        captured: list[ImageAsset] = []
        async with self.open_camera() as session:
            for i in range(shots):
                mode = (
                    CaptureMode.CAPTURE_AND_HOLD
                    if i < shots - 1
                    else CaptureMode.CAPTURE_AND_CLOSE
                )
                asset = await session.capture(mode)
                if asset is None:
                    break
                if self.add_image(asset):
                    captured.append(asset)
        return captured

    async def scan(
        self,
        images: list[ImageAsset] | None = None,
        text: str | None = None,
        language: str | None = None,
    ) -> ScanOutcome | None:
        """Run one scan and record it in history when it succeeds.

        Returns None when a scan is already in progress.
        """
        if self.state.is_loading:
            logger.debug("Scan already in progress, ignoring")
            return None

        if images is None and not text:
            images = list(self.state.images)

        self.state.is_loading = True
        try:
            outcome = await self.orchestrator.analyze(
                images=images, text=text, language=language
            )
        finally:
            self.state.is_loading = False

        if outcome.ok:
            thumb = None
            if outcome.prepared:
                thumb = await asyncio.to_thread(imaging.thumbnail, outcome.prepared[0].asset)
            self.history.append(outcome.result, thumb)
            self.state.clear_images()
        return outcome
