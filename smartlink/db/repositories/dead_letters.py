from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from smartlink.db.models import DeadLetterEvent
from smartlink.db.repositories.base import Repository


class DeadLettersRepository(Repository):
    def record(
        self,
        *,
        run_id: str,
        external_event_key: str,
        reason: str,
        detail: str | None,
        event_payload: dict[str, Any],
    ) -> DeadLetterEvent:
        existing = self.get_by_run(run_id)
        if existing:
            return existing
        dead_letter = DeadLetterEvent(
            run_id=run_id,
            external_event_key=external_event_key,
            reason=reason,
            detail=detail,
            event_payload=event_payload,
        )
        self.session.add(dead_letter)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get_by_run(run_id)
            if existing:
                return existing
            raise
        self.session.refresh(dead_letter)
        return dead_letter

    def get(self, dead_letter_id: str) -> Optional[DeadLetterEvent]:
        return self.session.get(DeadLetterEvent, dead_letter_id)

    def get_by_run(self, run_id: str) -> Optional[DeadLetterEvent]:
        stmt = select(DeadLetterEvent).where(DeadLetterEvent.run_id == run_id)
        return self.session.scalars(stmt).first()

    def list_unresolved(self, *, limit: int = 100) -> List[DeadLetterEvent]:
        stmt = (
            select(DeadLetterEvent)
            .where(DeadLetterEvent.resolved_at.is_(None))
            .order_by(DeadLetterEvent.created_at.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def resolve(self, dead_letter_id: str) -> Optional[DeadLetterEvent]:
        dead_letter = self.get(dead_letter_id)
        if not dead_letter:
            return None
        if dead_letter.resolved_at is None:
            dead_letter.resolved_at = datetime.now(timezone.utc)
            self.session.commit()
            self.session.refresh(dead_letter)
        return dead_letter
