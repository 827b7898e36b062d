"""One scan attempt: preflight, preparation, the backend call and its outcome."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from . import imaging
from .classifier import ClassificationBackend
from .entitlement import EntitlementState
from .errors import ScanError, ScanFailureKind, classify_exception, user_message
from .imaging import QualityTier
from .models import Identity, ImageAsset, PreparedImage, ScanRequest, ScanResult

logger = logging.getLogger(__name__)

MAX_IMAGES_PER_SCAN = 4

# Progress checkpoints exposed while a scan runs.
PROGRESS_PREPARING = 5
PROGRESS_PREPARED = 30
PROGRESS_SENDING = 40
PROGRESS_CEILING = 95

_IMAGE_SIZE_HINTS = ("image size", "too large", "حجم الصورة")


class ScanPhase(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    REJECTED = "rejected"
    PREPARING = "preparing"
    SENDING = "sending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ScanSessionState:
    """Caller-owned state of the scan screen."""

    phase: ScanPhase = ScanPhase.IDLE
    progress: float = 0.0
    tier: QualityTier = imaging.HIGH
    is_loading: bool = False
    images: list[ImageAsset] = field(default_factory=list)
    max_images: int = MAX_IMAGES_PER_SCAN

    def add_image(self, image: ImageAsset) -> bool:
        """Collect an image for the next scan. A new image restores the high tier."""
        if len(self.images) >= self.max_images:
            return False
        self.images.append(image)
        self.tier = imaging.HIGH
        return True

    def remove_image(self, index: int) -> None:
        del self.images[index]

    def clear_images(self) -> None:
        self.images.clear()


@dataclass
class ScanOutcome:
    """Result of one ``analyze()`` call. Exactly one of result/error is set.

    ``phase`` is the terminal phase the attempt reached before the session
    returned to idle.
    """

    result: ScanResult | None = None
    error: ScanError | None = None
    prepared: list[PreparedImage] = field(default_factory=list)
    language: str = "ar"
    phase: ScanPhase = ScanPhase.IDLE

    @property
    def ok(self) -> bool:
        return self.result is not None and not self.result.is_failure

    @property
    def upgrade_required(self) -> bool:
        return self.error is not None and self.error.kind is ScanFailureKind.QUOTA_EXCEEDED

    @property
    def message(self) -> str:
        if self.error is not None:
            return user_message(self.error.kind, self.language)
        if self.result is not None:
            return self.result.reason
        return ""


def _next_progress(current: float) -> float:
    """Close a fixed share of the remaining distance, never reaching the ceiling."""
    step = max((PROGRESS_CEILING - current) * 0.1, 0.0)
    return min(current + step, PROGRESS_CEILING - 0.01)


class ScanRequestOrchestrator:
    """Runs scan attempts against a classification backend.

    The orchestrator does not queue or coalesce calls. Callers hold
    ``ScanSessionState.is_loading`` while ``analyze()`` runs.
    """

    def __init__(
        self,
        backend: ClassificationBackend,
        entitlement: EntitlementState,
        *,
        state: ScanSessionState | None = None,
        enhance: bool = False,
        contrast: float = imaging.DEFAULT_CONTRAST,
        language: str = "ar",
        tick_interval: float = 0.2,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        self._backend = backend
        self._entitlement = entitlement
        self.state = state or ScanSessionState()
        self._enhance = enhance
        self._contrast = contrast
        self._language = language
        self._tick_interval = tick_interval
        self._on_progress = on_progress
        self._ticker: asyncio.Task | None = None

    @property
    def progress(self) -> float:
        return self.state.progress

    def _set_progress(self, value: float) -> None:
        self.state.progress = value
        if self._on_progress is not None:
            self._on_progress(value)

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            self._set_progress(_next_progress(self.state.progress))

    def _start_ticker(self) -> None:
        self._stop_ticker()
        self._ticker = asyncio.get_running_loop().create_task(self._tick())

    def _stop_ticker(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()

    def reset(self) -> None:
        """Return to idle, stopping the progress ticker."""
        self._stop_ticker()
        self.state.phase = ScanPhase.IDLE
        self._set_progress(0)

    def _fail(
        self, error: ScanError, language: str, prepared: list[PreparedImage] | None = None
    ) -> ScanOutcome:
        self.state.phase = ScanPhase.FAILED
        self._set_progress(0)
        return ScanOutcome(
            error=error, prepared=prepared or [], language=language, phase=ScanPhase.FAILED
        )

    async def _prepare(self, images: list[ImageAsset]) -> list[PreparedImage]:
        tier = self.state.tier
        return list(
            await asyncio.gather(
                *(
                    asyncio.to_thread(
                        imaging.prepare,
                        image,
                        tier,
                        enhance_image=self._enhance,
                        contrast=self._contrast,
                    )
                    for image in images
                )
            )
        )

    async def analyze(
        self,
        images: list[ImageAsset] | None = None,
        text: str | None = None,
        identity: Identity | str | None = None,
        language: str | None = None,
    ) -> ScanOutcome:
        """Run one scan attempt.

        Args:
            images: One to four captured images of the same product.
            text: Ingredient list typed by the user, used instead of images.
            identity: Identity the scan is attributed to. Defaults to the
                entitlement state's resolved identity.
            language: Language tag for the verdict and messages.

        Returns:
            A ScanOutcome. Failures are returned, never raised. The session
            is back in the idle phase when this returns or is cancelled.
        """
        language = language or self._language
        outcome: ScanOutcome | None = None
        try:
            outcome = await self._attempt(list(images or []), text, identity, language)
            return outcome
        finally:
            self._stop_ticker()
            if outcome is None:
                logger.info("Scan cancelled")
                self._set_progress(0)
            self.state.phase = ScanPhase.IDLE

    async def _attempt(
        self,
        images: list[ImageAsset],
        text: str | None,
        identity: Identity | str | None,
        language: str,
    ) -> ScanOutcome:
        text = (text or "").strip() or None
        if identity is None:
            identity = self._entitlement.identity

        self.state.phase = ScanPhase.PREFLIGHT
        if not self._entitlement.can_scan():
            logger.info("Free scan limit reached, not sending")
            self.state.phase = ScanPhase.REJECTED
            self._set_progress(0)
            return ScanOutcome(
                error=ScanError(ScanFailureKind.QUOTA_EXCEEDED, "local preflight"),
                language=language,
                phase=ScanPhase.REJECTED,
            )

        if bool(images) == bool(text) or len(images) > MAX_IMAGES_PER_SCAN:
            return self._fail(
                ScanError(
                    ScanFailureKind.INVALID_INPUT,
                    f"expected 1-{MAX_IMAGES_PER_SCAN} images or text, "
                    f"got {len(images)} images and text={text is not None}",
                ),
                language,
            )

        prepared: list[PreparedImage] = []
        try:
            if images:
                self.state.phase = ScanPhase.PREPARING
                self._set_progress(PROGRESS_PREPARING)
                prepared = await self._prepare(images)
                self._set_progress(PROGRESS_PREPARED)

            request = ScanRequest(
                images=[p.payload for p in prepared],
                text=text,
                identity=getattr(identity, "user_id", identity),
                access_token=getattr(identity, "access_token", None) or None,
                language=language,
            )

            self.state.phase = ScanPhase.SENDING
            self._set_progress(PROGRESS_SENDING)
            self._start_ticker()
            try:
                result = await self._backend.classify(request)
            finally:
                self._stop_ticker()
            self._set_progress(100)
        except Exception as e:
            error = classify_exception(e)
            logger.warning("Scan failed (%s): %s", error.kind.value, error)
            if error.kind is ScanFailureKind.PAYLOAD_TOO_LARGE:
                self._downgrade()
            return self._fail(error, language, prepared)

        if result.is_failure:
            logger.info("Backend reported a failed scan: %s", result.reason)
            if any(h in result.reason.lower() for h in _IMAGE_SIZE_HINTS):
                self._downgrade()
            self.state.phase = ScanPhase.FAILED
            self._set_progress(0)
            return ScanOutcome(
                result=result, prepared=prepared, language=language, phase=ScanPhase.FAILED
            )

        self.state.phase = ScanPhase.SUCCEEDED
        try:
            await self._entitlement.after_successful_scan(
                server_counted=self._backend.server_enforces_quota
            )
        except Exception:
            logger.exception("Entitlement update after scan failed")
        return ScanOutcome(
            result=result, prepared=prepared, language=language, phase=ScanPhase.SUCCEEDED
        )

    def _downgrade(self) -> None:
        if self.state.tier is not imaging.LOW:
            logger.info("Switching to low image quality for the next attempt")
        self.state.tier = imaging.LOW
