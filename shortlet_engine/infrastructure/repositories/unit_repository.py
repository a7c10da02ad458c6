# shortlet_engine/infrastructure/repositories/unit_repository.py

from datetime import date

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from shortlet_engine.domain.values import BlockReason
from shortlet_engine.infrastructure.db.models import Block, Unit


class UnitRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, unit_id: str) -> Unit | None:
        stmt = select(Unit).where(Unit.id == unit_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert(self, unit_id: str, **fields) -> Unit:
        unit = self.get_by_id(unit_id)

        if unit:
            for name, value in fields.items():
                setattr(unit, name, value)
            return unit

        unit = Unit(id=unit_id, **fields)
        self.db.add(unit)
        return unit

    def list_blocks(
        self,
        unit_id: str,
        date_from: date,
        date_to: date,
    ) -> list[Block]:
        stmt = (
            select(Block)
            .where(Block.unit_id == unit_id)
            .where(Block.date_from < date_to)
            .where(Block.date_to > date_from)
            .order_by(Block.date_from)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_block(
        self,
        unit_id: str,
        date_from: date,
        date_to: date,
        reason: BlockReason,
    ) -> Block:
        block = Block(
            unit_id=unit_id,
            date_from=date_from,
            date_to=date_to,
            reason=reason,
        )
        self.db.add(block)
        return block

    def delete_block(self, unit_id: str, block_id: str) -> bool:
        stmt = (
            delete(Block)
            .where(Block.id == block_id)
            .where(Block.unit_id == unit_id)
        )
        return self.db.execute(stmt).rowcount == 1
