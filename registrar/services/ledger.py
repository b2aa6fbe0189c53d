from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registrar.core.db import session_scope
from registrar.core.logging import get_logger
from registrar.db.models import MediaAsset
from registrar.ingest.errors import ValidationError
from registrar.ingest.models import MAX_SLOT, MIN_SLOT


@dataclass(slots=True)
class AnchorChange:
    agent: str
    slot: int
    public_id: str
    evicted_public_id: Optional[str] = None
    previous_agent: Optional[str] = None
    previous_slot: Optional[int] = None


class IdentitySlotLedger:
    """Single-occupancy map of (agent, slot) to the asset anchoring that role.

    Evict-then-write for one slot runs under a per-slot lock so two items
    targeting the same slot cannot interleave; the table's unique constraint
    backs this up across processes.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], known_agents: tuple[str, ...]):
        self.session_factory = session_factory
        self.known_agents = known_agents
        self.logger = get_logger(component="identity_slot_ledger")
        self._locks: dict[tuple[str, int], asyncio.Lock] = {}

    def _lock_for(self, agent: str, slot: int) -> asyncio.Lock:
        key = (agent, slot)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def validate(self, agent: str, slot: int) -> None:
        if agent not in self.known_agents:
            raise ValidationError(f"unknown agent {agent!r}")
        if not (MIN_SLOT <= slot <= MAX_SLOT):
            raise ValidationError(f"slot {slot} outside {MIN_SLOT}-{MAX_SLOT}")

    async def set_identity_anchor(self, agent: str, slot: int, public_id: str) -> AnchorChange:
        """Make ``public_id`` the only occupant of ``(agent, slot)``.

        The previous occupant keeps its catalog row and loses only its slot
        fields. An asset already anchored elsewhere moves to the new slot; the
        slot it leaves is locked too, always in sorted order.

        Raises:
            ValidationError: ``agent`` or ``slot`` is out of range.
            LookupError: no catalog row exists for ``public_id``.
        """
        self.validate(agent, slot)
        while True:
            slots = {(agent, slot)}
            previous = await self._anchor_of(public_id)
            if previous is not None:
                slots.add(previous)
            async with AsyncExitStack() as stack:
                for key in sorted(slots):
                    await stack.enter_async_context(self._lock_for(*key))
                async with session_scope(self.session_factory) as session:
                    target = await _by_public_id(session, public_id)
                    if target is None:
                        raise LookupError(public_id)
                    if _anchor(target) not in (None, *slots):
                        # Moved by another writer between the read and the locks.
                        continue

                    change = AnchorChange(
                        agent=agent,
                        slot=slot,
                        public_id=public_id,
                        previous_agent=target.identity_agent,
                        previous_slot=target.identity_slot,
                    )
                    occupant = await _occupant(session, agent, slot)
                    if occupant is not None and occupant.id != target.id:
                        occupant.identity_agent = None
                        occupant.identity_slot = None
                        change.evicted_public_id = occupant.public_id
                        # Flush the eviction first so the unique anchor constraint never sees two occupants.
                        await session.flush()

                    target.identity_agent = agent
                    target.identity_slot = slot
                    await session.commit()
            break

        self.logger.info(
            "identity_anchor_set",
            agent=agent,
            slot=slot,
            public_id=public_id,
            evicted=change.evicted_public_id,
            previous_slot=change.previous_slot,
        )
        return change

    async def _anchor_of(self, public_id: str) -> tuple[str, int] | None:
        async with session_scope(self.session_factory) as session:
            target = await _by_public_id(session, public_id)
            if target is None:
                raise LookupError(public_id)
            return _anchor(target)

    async def clear_anchor(self, agent: str, slot: int) -> Optional[str]:
        self.validate(agent, slot)
        async with self._lock_for(agent, slot):
            async with session_scope(self.session_factory) as session:
                occupant = await _occupant(session, agent, slot)
                if occupant is None:
                    return None
                occupant.identity_agent = None
                occupant.identity_slot = None
                await session.commit()
                self.logger.info("identity_anchor_cleared", agent=agent, slot=slot, public_id=occupant.public_id)
                return occupant.public_id

    async def occupant(self, agent: str, slot: int) -> MediaAsset | None:
        async with session_scope(self.session_factory) as session:
            return await _occupant(session, agent, slot)

    async def anchors_for(self, agent: str) -> Sequence[MediaAsset]:
        stmt = (
            select(MediaAsset)
            .where(MediaAsset.identity_agent == agent, MediaAsset.identity_slot.is_not(None))
            .order_by(MediaAsset.identity_slot)
        )
        async with session_scope(self.session_factory) as session:
            return (await session.execute(stmt)).scalars().all()


async def _by_public_id(session: AsyncSession, public_id: str) -> MediaAsset | None:
    stmt = select(MediaAsset).where(MediaAsset.public_id == public_id)
    return (await session.execute(stmt)).scalar_one_or_none()


def _anchor(asset: MediaAsset) -> tuple[str, int] | None:
    if asset.identity_agent is None or asset.identity_slot is None:
        return None
    return asset.identity_agent, asset.identity_slot


async def _occupant(session: AsyncSession, agent: str, slot: int) -> MediaAsset | None:
    stmt = select(MediaAsset).where(MediaAsset.identity_agent == agent, MediaAsset.identity_slot == slot)
    return (await session.execute(stmt)).scalar_one_or_none()


__all__ = ["AnchorChange", "IdentitySlotLedger"]
