from __future__ import annotations

from typing import Optional

from sqlalchemy import select

from smartlink.db.models import Click, Link
from smartlink.db.repositories.base import Repository


class ClicksRepository(Repository):
    def add(self, click: Click) -> Click:
        return self.save(click)

    def get_with_link(self, click_id: str) -> Optional[tuple[Click, Link]]:
        stmt = select(Click, Link).join(Link, Click.link_id == Link.id).where(Click.click_id == click_id)
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        return row[0], row[1]
