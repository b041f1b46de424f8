"""
Session lifecycle management.

Proactive rotation: sessions whose token count crosses a threshold are reset
through the gateway before the host's own compaction kicks in. The threshold
is meant to sit well below the host's compaction trigger so that compaction
becomes the rarely used fallback.

Per session:  observed -> excluded | below_threshold | rotated | rotation_failed
(in preview mode rotation candidates end as would_rotate instead).
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple

from contextkeeper.config import DEFAULT_EXCLUDE_PATTERNS
from contextkeeper.errors import RegistryUnavailable
from contextkeeper.logger import get_logger
from contextkeeper.session.gateway import GatewayClient
from contextkeeper.session.models import (
    RotationDecision,
    RotationReport,
    RotationState,
    SessionDescriptor,
)

logger = get_logger(__name__)


@dataclass
class RotationPolicy:
    """Token threshold plus the session keys that must never be force-rotated."""

    threshold: int = 150_000
    exclude_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )

    def __post_init__(self):
        if self.threshold <= 0:
            raise ValueError("Rotation threshold must be a positive token count")
        self._compiled: List[Pattern[str]] = [re.compile(p) for p in self.exclude_patterns]

    def is_excluded(self, key: Optional[str]) -> bool:
        if not key:
            return True
        return any(pattern.search(key) for pattern in self._compiled)

    def classify(self, session: SessionDescriptor) -> Tuple[Optional[RotationState], str]:
        """
        Decide what to do with one session.

        Returns:
            (state, reason) where state is None for a rotation candidate
        """
        if not session.key:
            return RotationState.EXCLUDED, "session has no key"

        if self.is_excluded(session.key):
            return RotationState.EXCLUDED, "matches exclusion pattern"

        tokens = session.total_tokens or 0
        if tokens < self.threshold:
            return RotationState.BELOW_THRESHOLD, f"{tokens} < {self.threshold} tokens"

        return None, f"{tokens} >= {self.threshold} tokens"


class RotationController:
    """Lists sessions, applies the policy and issues rotate commands."""

    def __init__(
        self,
        gateway: GatewayClient,
        policy: Optional[RotationPolicy] = None,
        budget_seconds: float = 120.0,
    ):
        self.gateway = gateway
        self.policy = policy or RotationPolicy()
        self.budget_seconds = budget_seconds

    async def run(self, dry_run: bool = False) -> RotationReport:
        """
        Run one rotation pass.

        Raises:
            RegistryUnavailable: the initial session listing failed
        """
        mode = " [DRY RUN]" if dry_run else ""
        logger.info(
            f"Starting rotation check (threshold: {self.policy.threshold} tokens){mode}"
        )

        sessions = await self.gateway.list_sessions()
        logger.debug(f"Found {len(sessions)} total sessions")

        report = RotationReport(threshold=self.policy.threshold, dry_run=dry_run)
        candidates: List[SessionDescriptor] = []

        for session in sessions:
            state, reason = self.policy.classify(session)
            if state is None:
                candidates.append(session)
                continue
            report.decisions.append(self._decision(session, state, reason))
            logger.debug(f"{session.key} [{session.short_id}]: {state.value} ({reason})")

        if not candidates:
            logger.info("No sessions exceed threshold.")
            return report

        logger.info(f"Found {len(candidates)} session(s) exceeding {self.policy.threshold} tokens")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.budget_seconds

        for session in candidates:
            if dry_run:
                logger.info(
                    f"[DRY RUN] Would rotate: {session.key} [{session.short_id}] "
                    f"({session.total_tokens} tokens)"
                )
                report.decisions.append(
                    self._decision(session, RotationState.WOULD_ROTATE, "preview only")
                )
                continue

            remaining = deadline - loop.time()
            if remaining <= 0:
                report.decisions.append(
                    self._decision(
                        session, RotationState.ROTATION_FAILED, "wall-clock budget exhausted"
                    )
                )
                continue

            report.decisions.append(await self._rotate_one(session, remaining))

        logger.info(report.summary())
        return report

    async def _rotate_one(
        self, session: SessionDescriptor, remaining: float
    ) -> RotationDecision:
        """Rotate a single session; failures are recorded, never raised."""
        try:
            result = await asyncio.wait_for(self.gateway.rotate(session.key), remaining)
        except asyncio.TimeoutError:
            logger.error(f"Error rotating {session.key}: wall-clock budget exhausted")
            return self._decision(
                session, RotationState.ROTATION_FAILED, "wall-clock budget exhausted"
            )
        except RegistryUnavailable as e:
            logger.error(f"Error rotating {session.key}: {e}")
            return self._decision(session, RotationState.ROTATION_FAILED, str(e))

        if not result.ok:
            logger.error(f"Failed to rotate {session.key}: {result.detail}")
            return self._decision(
                session, RotationState.ROTATION_FAILED, result.detail or "rejected"
            )

        new_id = (result.session_id or "unknown")[:8]
        logger.info(
            f"Rotated: {session.key} [{session.short_id}] ({session.total_tokens} tokens) -> new session {new_id}"
        )
        decision = self._decision(session, RotationState.ROTATED, "rotated")
        decision.new_session_id = result.session_id
        return decision

    @staticmethod
    def _decision(
        session: SessionDescriptor, state: RotationState, reason: str
    ) -> RotationDecision:
        return RotationDecision(
            key=session.key,
            session_id=session.session_id,
            total_tokens=session.total_tokens or 0,
            state=state,
            reason=reason,
        )
