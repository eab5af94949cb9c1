from __future__ import annotations

from typing import Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from smartlink.db.enums import SideEffectStatusEnum
from smartlink.db.models import Conversion
from smartlink.db.repositories.base import Repository

SIDE_EFFECT_STATUS_FIELDS = (
    "ad_platform_status",
    "custom_postback_status",
    "alert_status",
    "counters_status",
)


class ConversionsRepository(Repository):
    def get(self, conversion_id: str) -> Optional[Conversion]:
        return self.session.get(Conversion, conversion_id)

    def get_by_event_key(self, *, tenant_id: str, external_event_key: str) -> Optional[Conversion]:
        stmt = select(Conversion).where(
            Conversion.tenant_id == tenant_id,
            Conversion.external_event_key == external_event_key,
        )
        return self.session.scalars(stmt).first()

    def get_or_create(self, conversion: Conversion) -> Tuple[Conversion, bool]:
        """
        Insert the conversion unless one already exists for (tenant_id, external_event_key).

        Returns (conversion, created_flag).
        """
        existing = self.get_by_event_key(
            tenant_id=conversion.tenant_id,
            external_event_key=conversion.external_event_key,
        )
        if existing:
            return existing, False

        self.session.add(conversion)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get_by_event_key(
                tenant_id=conversion.tenant_id,
                external_event_key=conversion.external_event_key,
            )
            if existing:
                return existing, False
            raise
        self.session.refresh(conversion)
        return conversion, True

    def mark_side_effect(self, conversion_id: str, *, field: str, status: SideEffectStatusEnum) -> bool:
        """
        Record an adapter outcome. sent/skipped are final; only an empty or failed flag is overwritten.
        """
        if field not in SIDE_EFFECT_STATUS_FIELDS:
            raise ValueError(f"Unknown side effect status field: {field}")
        column = getattr(Conversion, field)
        stmt = (
            update(Conversion)
            .where(
                Conversion.id == conversion_id,
                or_(column.is_(None), column == SideEffectStatusEnum.failed),
            )
            .values({field: status})
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1
