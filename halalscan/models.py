"""Data models shared by the capture, scan and history layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class HalalStatus(str, Enum):
    HALAL = "HALAL"
    HARAM = "HARAM"
    DOUBTFUL = "DOUBTFUL"
    NON_FOOD = "NON_FOOD"


@dataclass(frozen=True)
class ImageAsset:
    """Encoded image bytes as produced by a capture or a file read."""

    data: bytes
    mime_type: str
    width: int
    height: int


@dataclass(frozen=True)
class Transferable:
    """Base64 payload (no data-URI header) ready for the transport layer."""

    data: str
    mime_type: str


@dataclass(frozen=True)
class PreparedImage:
    """An ImageAsset transformed for transmission within one scan."""

    asset: ImageAsset
    payload: Transferable
    tier: str


@dataclass
class IngredientDetail:
    name: str
    status: HalalStatus

    def to_dict(self) -> dict:
        return {"name": self.name, "status": self.status.value}


@dataclass
class ScanResult:
    """Classification for one product.

    A confidence of 0 marks a failed attempt whose ``reason`` is the
    user-facing message, never a real classification.
    """

    status: HalalStatus
    reason: str
    confidence: int
    ingredients: list[IngredientDetail] = field(default_factory=list)

    @property
    def is_failure(self) -> bool:
        return self.confidence == 0

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "ingredientsDetected": [i.to_dict() for i in self.ingredients],
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScanResult:
        """Build a result from the backend's JSON object.

        Raises:
            ValueError: If a status is unknown or required fields are missing.
        """
        try:
            status = HalalStatus(data["status"])
            confidence = int(data.get("confidence", 0))
            ingredients = [
                IngredientDetail(
                    name=str(item["name"]),
                    status=HalalStatus(item.get("status", HalalStatus.DOUBTFUL.value)),
                )
                for item in data.get("ingredientsDetected") or []
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed scan result: {e}") from e

        return cls(
            status=status,
            reason=str(data.get("reason", "")),
            confidence=max(0, min(100, confidence)),
            ingredients=ingredients,
        )

    @classmethod
    def failure(cls, reason: str) -> ScanResult:
        """Synthesize a local failure result."""
        return cls(status=HalalStatus.NON_FOOD, reason=reason, confidence=0)


@dataclass
class ScanRequest:
    """One classification request: images XOR text, plus identity and language."""

    images: list[Transferable] = field(default_factory=list)
    text: str | None = None
    identity: str | None = None
    access_token: str | None = None
    language: str = "ar"


@dataclass
class ScanHistoryItem:
    id: str
    date: int  # epoch milliseconds
    result: ScanResult
    thumbnail: ImageAsset | None = None


@dataclass
class EntitlementSnapshot:
    scan_count: int = 0
    is_premium: bool = False
    identity: str | None = None


@dataclass
class Identity:
    """Opaque identity handed out by the identity provider."""

    user_id: str
    access_token: str = ""
    anonymous: bool = True
    refresh_token: str = ""


@dataclass
class CaptureCapabilities:
    """Torch and zoom support of one live stream, probed once at open time."""

    has_torch: bool = False
    torch_on: bool = False
    has_zoom: bool = False
    zoom_level: float = 1.0
    min_zoom: float = 1.0
    max_zoom: float = 1.0
