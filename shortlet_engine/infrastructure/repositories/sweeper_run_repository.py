# shortlet_engine/infrastructure/repositories/sweeper_run_repository.py

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from shortlet_engine.infrastructure.db.models import SweeperRun


class SweeperRunRepository:

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        mode: str,
        started_at: datetime,
        finished_at: datetime,
        summary_json: str,
    ) -> SweeperRun:
        run = SweeperRun(
            mode=mode,
            started_at=started_at,
            finished_at=finished_at,
            summary=summary_json,
        )
        self.db.add(run)
        self.db.flush()
        return run

    def latest(self) -> SweeperRun | None:
        stmt = select(SweeperRun).order_by(SweeperRun.version.desc()).limit(1)
        return self.db.execute(stmt).scalar_one_or_none()
