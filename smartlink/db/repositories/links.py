from __future__ import annotations

from typing import Optional

from sqlalchemy import or_, select, update

from smartlink.db.models import LandingPage, Link, Tenant
from smartlink.db.repositories.base import Repository


class LinksRepository(Repository):
    def get_active(self, link_id: str) -> Optional[Link]:
        stmt = select(Link).where(Link.id == link_id, Link.is_active.is_(True))
        return self.session.scalars(stmt).first()

    def get_active_by_reference(self, link_ref: str) -> Optional[Link]:
        """Match either our own link id or the traffic source's smart-link id."""
        stmt = (
            select(Link)
            .where(
                or_(Link.id == link_ref, Link.external_link_id == link_ref),
                Link.is_active.is_(True),
            )
            .order_by(Link.created_at.asc())
        )
        return self.session.scalars(stmt).first()

    def get(self, link_id: str) -> Optional[Link]:
        return self.session.get(Link, link_id)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.session.get(Tenant, tenant_id)

    def get_published_landing_page(self, slug: str) -> Optional[tuple[LandingPage, Link]]:
        stmt = (
            select(LandingPage, Link)
            .join(Link, LandingPage.link_id == Link.id)
            .where(
                LandingPage.slug == slug,
                LandingPage.is_published.is_(True),
                Link.is_active.is_(True),
            )
        )
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        return row[0], row[1]

    def increment_clicks(self, link_id: str) -> None:
        self.session.execute(
            update(Link).where(Link.id == link_id).values(total_clicks=Link.total_clicks + 1)
        )
        self.session.commit()

    def increment_conversion_totals(self, link_id: str, *, revenue_cents: int) -> None:
        self.session.execute(
            update(Link)
            .where(Link.id == link_id)
            .values(
                total_conversions=Link.total_conversions + 1,
                total_revenue_cents=Link.total_revenue_cents + revenue_cents,
            )
        )
        self.session.commit()

    def increment_landing_page_views(self, landing_page_id: str) -> None:
        self.session.execute(
            update(LandingPage)
            .where(LandingPage.id == landing_page_id)
            .values(view_count=LandingPage.view_count + 1)
        )
        self.session.commit()
