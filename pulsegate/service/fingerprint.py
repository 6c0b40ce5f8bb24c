from __future__ import annotations

import hashlib
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from pulsegate.logging import get_logger
from pulsegate.service.errors import ValidationError

logger = get_logger(__name__)

STANDARD_COLOR_DEPTHS = frozenset({24, 32})
MAX_PLAUSIBLE_CORES = 64
MIN_RENDER_SIGNAL_LENGTH = 50
FONT_PREFIX = 10
CANVAS_COMPARE_PREFIX = 100
CANVAS_DISTANCE_THRESHOLD = 10
FONT_JACCARD_THRESHOLD = 0.8
# 8 exact-match features plus the canvas and font bonuses
SIMILARITY_SLOTS = 10


class DeviceFingerprint(BaseModel):
    """Client-reported device attributes, validated when they enter the service."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    browser: str
    os: str
    screen_resolution: str
    timezone: str
    language: str
    color_depth: int = Field(ge=0)
    hardware_concurrency: int = Field(ge=0)
    platform: str
    canvas: str
    webgl: str
    user_agent: str
    device_memory: Optional[float] = None
    plugins: List[str] = Field(default_factory=list)
    fonts: List[str] = Field(default_factory=list)


def _levenshtein(left: str, right: str) -> int:
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, lc in enumerate(left, start=1):
        current = [i]
        for j, rc in enumerate(right, start=1):
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (lc != rc))
            )
        previous = current
    return previous[-1]


def _jaccard(left: List[str], right: List[str]) -> float:
    a, b = set(left), set(right)
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class DeviceFingerprintAnalyzer:
    def validate(self, payload: Mapping[str, Any]) -> DeviceFingerprint:
        try:
            return DeviceFingerprint.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid device fingerprint",
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def derive_id(self, fp: DeviceFingerprint) -> str:
        """Stable sha256 over the attributes that survive browser restarts."""
        parts = [
            fp.browser,
            fp.os,
            fp.screen_resolution,
            fp.timezone,
            fp.language,
            str(fp.color_depth),
            str(fp.hardware_concurrency),
            fp.platform,
            fp.canvas,
            fp.webgl,
            ",".join(fp.fonts[:FONT_PREFIX]),
        ]
        return hashlib.sha256("|".join(p for p in parts if p).encode()).hexdigest()

    def similarity(self, first: DeviceFingerprint, second: DeviceFingerprint) -> float:
        exact = (
            "browser",
            "os",
            "screen_resolution",
            "timezone",
            "language",
            "color_depth",
            "hardware_concurrency",
            "platform",
        )
        score = sum(1 for name in exact if getattr(first, name) == getattr(second, name))
        if first.canvas and second.canvas:
            distance = _levenshtein(
                first.canvas[:CANVAS_COMPARE_PREFIX], second.canvas[:CANVAS_COMPARE_PREFIX]
            )
            if distance < CANVAS_DISTANCE_THRESHOLD:
                score += 1
        if _jaccard(first.fonts, second.fonts) > FONT_JACCARD_THRESHOLD:
            score += 1
        return score / SIMILARITY_SLOTS

    def suspicious_reasons(self, fp: DeviceFingerprint) -> List[str]:
        reasons: List[str] = []
        # Only contradictory pairs count; iPads report MacIntel with iOS
        if ("Win" in fp.platform and "Mac" in fp.os) or (
            "Mac" in fp.platform and "Windows" in fp.os
        ):
            reasons.append("platform_os_mismatch")
        if len(fp.canvas) < MIN_RENDER_SIGNAL_LENGTH or len(fp.webgl) < MIN_RENDER_SIGNAL_LENGTH:
            reasons.append("render_signals_missing")
        if not fp.fonts:
            reasons.append("no_fonts")
        if fp.hardware_concurrency > MAX_PLAUSIBLE_CORES:
            reasons.append("implausible_core_count")
        if fp.color_depth not in STANDARD_COLOR_DEPTHS:
            reasons.append("nonstandard_color_depth")
        if "chrome" in fp.browser.lower() and not fp.plugins:
            reasons.append("headless_browser_pattern")
        if not fp.language:
            reasons.append("missing_language")
        return reasons

    def is_suspicious(self, fp: DeviceFingerprint) -> bool:
        reasons = self.suspicious_reasons(fp)
        if reasons:
            logger.warning("device_fingerprint_suspicious", reasons=reasons)
        return bool(reasons)

    def device_name(self, fp: DeviceFingerprint) -> str:
        browser = fp.browser.split("/")[0].strip() or "Unknown browser"
        os_name = fp.os.strip() or "Unknown OS"
        return f"{browser} on {os_name}"

    def anonymize(self, fp: DeviceFingerprint) -> dict:
        """Coarse, non-identifying view suitable for analytics."""
        try:
            width = int(fp.screen_resolution.lower().split("x")[0])
        except (ValueError, IndexError):
            width = 0
        if width >= 1920:
            screen = "large"
        elif width >= 1280:
            screen = "medium"
        elif width > 0:
            screen = "small"
        else:
            screen = "unknown"
        cores = fp.hardware_concurrency
        hardware = "high" if cores >= 8 else "medium" if cores >= 4 else "low"
        return {
            "browser": fp.browser.split("/")[0].strip(),
            "os": fp.os,
            "platform": fp.platform,
            "language": fp.language.split("-")[0],
            "screen_class": screen,
            "hardware_class": hardware,
        }
