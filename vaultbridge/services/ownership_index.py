"""Worker-side ownership mirror: position id -> owner identity.

Written only on Create (register) and Close (unregister). The request
ledger keeps its own flags, committed separately; the reconciler converges
the two.
"""

import logging

from sqlmodel import Session, select

from vaultbridge.models.ownership import PositionOwner

logger = logging.getLogger(__name__)


class OwnershipIndex:
    def __init__(self, engine):
        self.engine = engine

    def register(self, owner: str, position_id: int):
        with Session(self.engine) as session:
            entry = session.get(PositionOwner, position_id)
            if entry is not None and entry.owner != owner:
                logger.warning(
                    f"Position {position_id} re-registered from {entry.owner} to {owner}"
                )
            if entry is None:
                entry = PositionOwner(position_id=position_id, owner=owner)
            entry.owner = owner
            session.add(entry)
            session.commit()
        logger.debug(f"Registered position {position_id} for {owner}")

    def unregister(self, position_id: int) -> bool:
        with Session(self.engine) as session:
            entry = session.get(PositionOwner, position_id)
            if entry is None:
                return False
            session.delete(entry)
            session.commit()
        logger.debug(f"Unregistered position {position_id}")
        return True

    def owner_of(self, position_id: int) -> str | None:
        with Session(self.engine) as session:
            entry = session.get(PositionOwner, position_id)
            return entry.owner if entry else None

    def is_owner(self, owner: str, position_id: int) -> bool:
        return self.owner_of(position_id) == owner

    def positions_for(self, owner: str) -> list[int]:
        """Position ids of `owner` in registration order."""
        with Session(self.engine) as session:
            stmt = (
                select(PositionOwner.position_id)
                .where(PositionOwner.owner == owner)
                .order_by(PositionOwner.registered_at, PositionOwner.position_id)
            )
            return list(session.exec(stmt).all())

    def all_entries(self) -> dict[int, str]:
        with Session(self.engine) as session:
            return {e.position_id: e.owner for e in session.exec(select(PositionOwner)).all()}
