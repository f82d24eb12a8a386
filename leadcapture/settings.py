import os
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


DEFAULT_TIMEZONE = os.getenv("DEFAULT_TENANT_TIMEZONE", "America/Chicago")


@dataclass(frozen=True)
class EngineSettings:
    max_messages_per_session: int = 50
    confidence_threshold: float = 0.6
    hot_lead_threshold: float = 0.8
    emergency_threshold: float = 0.95
    urgent_threshold: float = 0.88
    max_message_length: int = 2000
    lock_timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            max_messages_per_session=_env_int("MAX_MESSAGES_PER_SESSION", 50),
            confidence_threshold=_env_float("CONFIDENCE_THRESHOLD", 0.6),
            hot_lead_threshold=_env_float("HOT_LEAD_URGENCY_THRESHOLD", 0.8),
            lock_timeout_seconds=_env_float("SESSION_LOCK_TIMEOUT_SECONDS", 60.0),
        )


@dataclass(frozen=True)
class FollowUpSettings:
    sweep_interval_minutes: int = 5
    min_stale_minutes: int = 15
    max_stale_minutes: int = 30
    batch_size: int = 50
    office_hours: Tuple[int, int] = (7, 21)
    max_nudge_words: int = 15
    min_delay_minutes: int = 15
    max_delay_minutes: int = 1440
    dimensional_services: FrozenSet[str] = field(
        default_factory=lambda: frozenset(
            {"deck_repair", "deck_staining", "fence_install", "roofing", "flooring"}
        )
    )

    @classmethod
    def from_env(cls) -> "FollowUpSettings":
        return cls(
            sweep_interval_minutes=_env_int("FOLLOWUP_SWEEP_MINUTES", 5),
            min_stale_minutes=_env_int("FOLLOWUP_MIN_STALE_MINUTES", 15),
            max_stale_minutes=_env_int("FOLLOWUP_MAX_STALE_MINUTES", 30),
            batch_size=_env_int("FOLLOWUP_BATCH_SIZE", 50),
            office_hours=(
                _env_int("FOLLOWUP_OFFICE_START_HOUR", 7),
                _env_int("FOLLOWUP_OFFICE_END_HOUR", 21),
            ),
        )


@dataclass(frozen=True)
class DigestSettings:
    office_hours: Tuple[int, int] = (8, 20)
    window_days: int = 7
    messages_per_hour_saved: int = 15

    @classmethod
    def from_env(cls) -> "DigestSettings":
        return cls(
            office_hours=(
                _env_int("DIGEST_OFFICE_START_HOUR", 8),
                _env_int("DIGEST_OFFICE_END_HOUR", 20),
            ),
        )


@dataclass(frozen=True)
class SessionSettings:
    ttl_seconds: int = 24 * 60 * 60
    default_messages_per_session: int = 10

    @classmethod
    def from_env(cls) -> "SessionSettings":
        return cls(ttl_seconds=_env_int("SESSION_TTL_SECONDS", 24 * 60 * 60))


LEAD_RETENTION_DAYS = _env_int("LEAD_RETENTION_DAYS", 90)
