"""Reviewer authority over programs."""
import uuid
from typing import Protocol

from admission_engine.database.ledger import GrantFor, LedgerStore


class ReviewAuthority(Protocol):
    async def may_review(self, principal_id: uuid.UUID, program_id: uuid.UUID) -> bool:
        ...

    async def may_approve_hires(self, principal_id: uuid.UUID, program_id: uuid.UUID) -> bool:
        ...


class LedgerReviewAuthority:
    """Answers authority questions from reviewer grants stored in the ledger."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def may_review(self, principal_id: uuid.UUID, program_id: uuid.UUID) -> bool:
        grant = await self.ledger.find_one(GrantFor(principal_id, program_id))
        return grant is not None and grant.can_review

    async def may_approve_hires(self, principal_id: uuid.UUID, program_id: uuid.UUID) -> bool:
        grant = await self.ledger.find_one(GrantFor(principal_id, program_id))
        return grant is not None and grant.can_approve_hires
