from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy.exc import OperationalError

from smartlink.config import settings
from smartlink.db.models import Click, LandingPage, Link
from smartlink.db.repositories.clicks import ClicksRepository
from smartlink.security import verify_click_cookie
from smartlink.services.click_capture import (
    RequestContext,
    append_query_param,
    classify_browser,
    classify_device,
    generate_click_id,
)

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD_SAFARI = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/604.1"
)
DESKTOP_FIREFOX = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"
DESKTOP_EDGE_CHROMIUM = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
)


@pytest.mark.parametrize(
    ("user_agent", "expected"),
    [
        (IPHONE_SAFARI, "mobile"),
        (IPAD_SAFARI, "tablet"),
        ("Mozilla/5.0 (Linux; Android 13; SM-X700) Tablet", "tablet"),
        (DESKTOP_FIREFOX, "desktop"),
        ("", "desktop"),
    ],
)
def test_classify_device(user_agent, expected):
    assert classify_device(user_agent) == expected


@pytest.mark.parametrize(
    ("user_agent", "expected"),
    [
        (IPHONE_SAFARI, "Safari"),
        (DESKTOP_FIREFOX, "Firefox"),
        # First matching rule wins, and Chromium Edge also advertises Chrome.
        (DESKTOP_EDGE_CHROMIUM, "Chrome"),
        ("Mozilla/5.0 (Windows NT 10.0) Edge/18.19041", "Edge"),
        ("curl/8.4.0", "Other"),
    ],
)
def test_classify_browser(user_agent, expected):
    assert classify_browser(user_agent) == expected


def test_click_ids_are_unique_over_a_million_samples():
    sample = {generate_click_id() for _ in range(1_000_000)}
    assert len(sample) == 1_000_000


def test_click_id_rejects_low_entropy():
    with pytest.raises(ValueError):
        generate_click_id(8)


def test_append_query_param_preserves_existing_query():
    url = append_query_param("https://offers.example.com/fan?ref=ad&ecid=old#top", "ecid", "new")
    parts = urlsplit(url)
    assert parse_qs(parts.query) == {"ref": ["ad"], "ecid": ["new"]}
    assert parts.fragment == "top"


def test_request_context_defaults():
    context = RequestContext.from_request_parts(headers={}, query_params={})
    assert context.country == "unknown"
    assert context.utm["utm_source"] == "direct"
    assert context.utm["utm_medium"] == "none"


def test_tracking_redirect_records_click(api_client, db_session, seed_link):
    seed_link()
    response = api_client.get(
        "/r/link_1",
        params={"utm_source": "tiktok", "utm_campaign": "spring"},
        headers={"user-agent": IPHONE_SAFARI, "cf-ipcountry": "DE", "referer": "https://tiktok.com/"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    location = urlsplit(response.headers["location"])
    query = parse_qs(location.query)
    assert location.netloc == "offers.example.com"
    assert query["ref"] == ["ad"]
    click_id = query[settings.CLICK_ID_QUERY_PARAM][0]

    db_session.expire_all()
    click = db_session.get(Click, click_id)
    assert click is not None
    assert click.utm_source == "tiktok"
    assert click.utm_medium == "none"
    assert click.utm_campaign == "spring"
    assert click.country == "DE"
    assert click.device_type == "mobile"
    assert click.browser == "Safari"
    assert click.referrer == "https://tiktok.com/"
    assert db_session.get(Link, "link_1").total_clicks == 1


def test_tracking_redirect_unknown_link_goes_to_not_found(api_client, db_session):
    response = api_client.get("/r/missing", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "https://links.example.com/404"
    assert db_session.query(Click).count() == 0


def test_tracking_redirect_inactive_link_goes_to_not_found(api_client, db_session, seed_link):
    seed_link(is_active=False)
    response = api_client.get("/r/link_1", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "https://links.example.com/404"


def test_landing_page_sets_click_cookies(api_client, db_session, seed_link):
    link = seed_link()
    db_session.add(LandingPage(id="lp_1", link_id=link.id, slug="spring", title="Spring", is_published=True))
    db_session.commit()

    response = api_client.get("/go/spring", headers={"x-vercel-ip-country": "US"}, follow_redirects=False)

    assert response.status_code == 302
    click_id = parse_qs(urlsplit(response.headers["location"]).query)["ecid"][0]
    assert verify_click_cookie(response.cookies.get(settings.CLICK_COOKIE_NAME)) == click_id

    set_cookie_headers = response.headers.get_list("set-cookie")
    click_cookie = next(h for h in set_cookie_headers if h.startswith(f"{settings.CLICK_COOKIE_NAME}="))
    destination_cookie = next(
        h for h in set_cookie_headers if h.startswith(f"{settings.CLICK_DESTINATION_COOKIE_NAME}=")
    )
    assert "httponly" in click_cookie.lower()
    assert "Max-Age=604800" in click_cookie
    assert "httponly" not in destination_cookie.lower()

    db_session.expire_all()
    click = db_session.get(Click, click_id)
    assert click.landing_page_id == "lp_1"
    assert click.country == "US"
    assert db_session.get(LandingPage, "lp_1").view_count == 1


def test_unpublished_landing_page_goes_to_not_found(api_client, db_session, seed_link):
    link = seed_link()
    db_session.add(LandingPage(id="lp_1", link_id=link.id, slug="draft", is_published=False))
    db_session.commit()

    response = api_client.get("/go/draft", follow_redirects=False)
    assert response.headers["location"] == "https://links.example.com/404"


def test_redirect_survives_click_write_failure(api_client, db_session, seed_link, monkeypatch, caplog):
    seed_link()

    def failing_add(self, click):
        raise OperationalError("INSERT INTO clicks", {}, Exception("database is locked"))

    monkeypatch.setattr(ClicksRepository, "add", failing_add)

    with caplog.at_level("ERROR", logger="smartlink.services.click_capture"):
        response = api_client.get("/r/link_1", follow_redirects=False)

    assert response.status_code == 302
    assert "ecid=" in response.headers["location"]
    assert any(record.getMessage() == "click_capture.persist_failed" for record in caplog.records)
    db_session.expire_all()
    assert db_session.query(Click).count() == 0
