"""
Pydantic models for sessions, transcript messages and rotation outcomes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ─── Transcript ───────────────────────────────────────────────────────


class MessageRecord(BaseModel):
    """A single normalized user/assistant turn read from a transcript line."""

    model_config = ConfigDict(frozen=True)

    role: str
    text: str
    timestamp: Optional[datetime] = None
    model: Optional[str] = None


class TranscriptRead(BaseModel):
    """Messages parsed from a transcript tail, plus how many lines were dropped."""

    messages: List[MessageRecord] = Field(default_factory=list)
    lines_read: int = 0
    malformed: int = 0


# ─── Session registry ─────────────────────────────────────────────────


class SessionDescriptor(BaseModel):
    """A session as reported by the host's registry."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    total_tokens: Optional[int] = Field(default=None, alias="totalTokens")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    size_bytes: Optional[int] = Field(default=None, alias="sizeBytes")

    @field_validator("total_tokens", "size_bytes", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> Optional[int]:
        # Only key and token count drive rotation; a bad count reads as unknown
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None

    @field_validator("updated_at", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value: Any) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        try:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                # Epoch milliseconds
                return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
            if isinstance(value, str):
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, OverflowError, OSError):
            return None
        return None

    @property
    def short_id(self) -> str:
        return (self.session_id or "")[:8] or "unknown"


class RotateResult(BaseModel):
    """Response to a rotate command."""

    ok: bool = False
    session_id: Optional[str] = None
    detail: Optional[str] = None


# ─── Rotation ─────────────────────────────────────────────────────────


class RotationState(str, Enum):
    """Terminal state of one session within a rotation pass."""

    EXCLUDED = "excluded"
    BELOW_THRESHOLD = "below_threshold"
    WOULD_ROTATE = "would_rotate"
    ROTATED = "rotated"
    ROTATION_FAILED = "rotation_failed"


class RotationDecision(BaseModel):
    key: Optional[str] = None
    session_id: Optional[str] = None
    total_tokens: int = 0
    state: RotationState
    new_session_id: Optional[str] = None
    reason: str = ""


class RotationReport(BaseModel):
    """Outcome of one rotation pass."""

    threshold: int
    dry_run: bool = False
    decisions: List[RotationDecision] = Field(default_factory=list)

    def count(self, state: RotationState) -> int:
        return sum(1 for d in self.decisions if d.state == state)

    @property
    def candidates(self) -> List[RotationDecision]:
        return [
            d
            for d in self.decisions
            if d.state
            in (
                RotationState.WOULD_ROTATE,
                RotationState.ROTATED,
                RotationState.ROTATION_FAILED,
            )
        ]

    @property
    def rotated(self) -> int:
        return self.count(RotationState.ROTATED) + self.count(RotationState.WOULD_ROTATE)

    @property
    def failed(self) -> int:
        return self.count(RotationState.ROTATION_FAILED)

    @property
    def skipped(self) -> int:
        return self.count(RotationState.EXCLUDED) + self.count(
            RotationState.BELOW_THRESHOLD
        )

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}Rotated {self.rotated}/{len(self.candidates)} candidate session(s) "
            f"(threshold {self.threshold} tokens): {self.skipped} skipped, "
            f"{self.failed} failed, {len(self.decisions)} observed."
        )
