"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-sender trigger thresholds for the sliding windows."""

    hour: int = 3
    day: int = 8


@dataclass(frozen=True)
class MediaConfig:
    """Where stored media locators are fetched from."""

    base_url: str = ""
    legacy_prefix: str = "media/campaigns/yanachaga/"
    public_prefix: str = "post/"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class DispatchConfig:
    """Pacing and delivery settings for the message dispatcher."""

    send_timeout_seconds: float = 60.0
    gallery_gap_seconds: float = 0.5
    document_filename: str = "Brochure.pdf"


@dataclass(frozen=True)
class QueueConfig:
    """Inbound queue sizing."""

    max_size: int = 100
    workers: int = 4
