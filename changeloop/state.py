"""Phase state machine for a change.

    PROPOSED --approved--> CHALLENGED --> IMPLEMENTING --> COMPLETE --> ARCHIVED
        |  ^
        |  +-- needs_revision (stays PROPOSED)
        +--rejected--> REJECTED --reenter (manual)--> PROPOSED

All mutations of a Change row go through this class.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import InvalidTransitionError, VerdictError
from .models import Change
from .verdict import Verdict


class Phase(StrEnum):
    PROPOSED = "proposed"
    CHALLENGED = "challenged"
    REJECTED = "rejected"
    IMPLEMENTING = "implementing"
    COMPLETE = "complete"
    ARCHIVED = "archived"


TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PROPOSED: frozenset({Phase.PROPOSED, Phase.CHALLENGED, Phase.REJECTED}),
    Phase.CHALLENGED: frozenset({Phase.IMPLEMENTING}),
    Phase.IMPLEMENTING: frozenset({Phase.IMPLEMENTING, Phase.COMPLETE}),
    Phase.COMPLETE: frozenset({Phase.ARCHIVED}),
    Phase.REJECTED: frozenset({Phase.PROPOSED}),
    Phase.ARCHIVED: frozenset(),
}

VERDICT_TARGETS: dict[Verdict, Phase] = {
    Verdict.APPROVED: Phase.CHALLENGED,
    Verdict.NEEDS_REVISION: Phase.PROPOSED,
    Verdict.REJECTED: Phase.REJECTED,
}


class PhaseStateMachine:
    """Persisted lifecycle state of one change."""

    def __init__(self, session: AsyncSession, change: Change):
        self.session = session
        self.change = change

    @classmethod
    async def load(cls, session: AsyncSession, change_id: str) -> PhaseStateMachine:
        return cls(session, await db.require_change(session, change_id))

    @property
    def change_id(self) -> str:
        return self.change.id

    @property
    def iteration(self) -> int:
        return self.change.iteration

    @property
    def session_id(self) -> str | None:
        return self.change.session_id

    def current_phase(self) -> Phase:
        return Phase(self.change.phase)

    async def _move(self, target: Phase) -> Phase:
        current = self.current_phase()
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self.change.phase = target.value
        await self.session.flush()
        return target

    async def apply_verdict(self, verdict: Verdict) -> Phase:
        """Apply a critique verdict. Only valid while the change is PROPOSED."""
        if verdict == Verdict.UNKNOWN:
            raise VerdictError("Cannot apply an unknown verdict")
        current = self.current_phase()
        target = VERDICT_TARGETS[verdict]
        if current != Phase.PROPOSED:
            raise InvalidTransitionError(current.value, target.value)
        return await self._move(target)

    async def start_implementation(self) -> Phase:
        return await self._move(Phase.IMPLEMENTING)

    async def complete(self) -> Phase:
        return await self._move(Phase.COMPLETE)

    async def archive(self) -> Phase:
        return await self._move(Phase.ARCHIVED)

    async def reenter(self) -> Phase:
        """Manually reopen a rejected change for a fresh planning round."""
        if self.current_phase() != Phase.REJECTED:
            raise InvalidTransitionError(self.current_phase().value, Phase.PROPOSED.value)
        self.change.iteration = 0
        self.change.session_id = None
        return await self._move(Phase.PROPOSED)

    async def set_session_id(self, session_id: str | None) -> None:
        self.change.session_id = session_id
        await self.session.flush()

    async def increment_iteration(self) -> int:
        self.change.iteration += 1
        await self.session.flush()
        return self.change.iteration

    async def set_last_action(self, action: str) -> None:
        self.change.last_action = action
        await self.session.flush()
