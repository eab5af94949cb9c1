from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from smartlink.pipeline.errors import EventPublishError
from smartlink.services.postback_ingestion import (
    PostbackValidationError,
    derive_external_event_key,
    derive_run_id,
    parse_postback,
)


def test_parse_postback_maps_fields():
    event = parse_postback(
        {
            "click_id": "abc123",
            "ecid": "ext_9",
            "type": "new_transaction",
            "tx_type": "recurring",
            "gross": "100.00",
            "net": "80.00",
            "fan_id": "fan_1",
            "fan_user": "alice",
            "creator_acct": "acct_1",
            "creator_user": "creator",
            "link_id": "link_1",
            "link_name": "Spring",
            "ts": "2026-03-01T12:30:45.123Z",
        }
    )

    assert event.click_id == "abc123"
    assert event.external_click_id == "ext_9"
    assert event.click_reference == "ext_9"
    assert event.conversion_type == "new_transaction"
    assert event.transaction_type == "recurring"
    assert event.amount_gross == Decimal("100.00")
    assert event.amount_net == Decimal("80.00")
    assert event.fan_of_id == "fan_1"
    assert event.fan_username == "alice"
    assert event.creator_acct_id == "acct_1"
    assert event.smart_link_id == "link_1"
    assert event.conversion_at == datetime(2026, 3, 1, 12, 30, 45, 123000, tzinfo=timezone.utc)
    assert event.external_event_key == "click:ext_9:new_transaction:2026-03-01T12:30:45+00:00"
    assert event.run_id == derive_run_id(event.external_event_key)


def test_parse_postback_reports_missing_parameters():
    with pytest.raises(PostbackValidationError) as excinfo:
        parse_postback({"click_id": "abc123"})
    assert excinfo.value.missing == ["type", "link_id"]
    assert str(excinfo.value) == "Missing required parameters: type, link_id"


def test_parse_postback_accepts_ecid_in_place_of_click_id():
    event = parse_postback({"ecid": "ext_9", "type": "click", "link_id": "link_1", "ts": "1767225600"})
    assert event.click_id == "ext_9"
    assert event.conversion_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_parse_postback_rejects_invalid_amount():
    with pytest.raises(PostbackValidationError):
        parse_postback({"click_id": "abc123", "type": "purchase", "link_id": "link_1", "net": "12,50"})


def test_transaction_id_wins_for_event_key():
    event = parse_postback({"click_id": "abc123", "type": "purchase", "link_id": "link_1", "tx_id": "tx_77"})
    assert event.external_event_key == "tx:tx_77"


def test_event_key_is_stable_for_redelivery():
    at = datetime(2026, 3, 1, 12, 30, 45, 999999, tzinfo=timezone.utc)
    first = derive_external_event_key(click_reference="abc123", conversion_type="purchase", conversion_at=at)
    second = derive_external_event_key(
        click_reference="abc123",
        conversion_type="purchase",
        conversion_at=at.replace(microsecond=1),
    )
    assert first == second
    assert derive_run_id(first) == derive_run_id(second)
    assert derive_run_id(first).startswith("run_")
    assert len(derive_run_id(first)) == 36


def test_webhook_accepts_postback(api_client, recording_publisher):
    response = api_client.get(
        "/webhooks/smart-link",
        params={"click_id": "abc123", "type": "new_subscriber", "link_id": "link_1", "net": "75"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert len(recording_publisher.events) == 1
    assert recording_publisher.events[0].amount_net == Decimal("75")


def test_webhook_rejects_missing_parameters_without_publishing(api_client, recording_publisher):
    response = api_client.get("/webhooks/smart-link", params={"type": "new_subscriber"})

    assert response.status_code == 400
    assert response.json() == {"detail": "Missing required parameters: click_id, link_id"}
    assert recording_publisher.events == []


def test_webhook_returns_500_when_publish_fails(api_client):
    class FailingPublisher:
        async def publish(self, event) -> None:
            raise EventPublishError("bus unavailable")

    api_client.app.state.event_publisher = FailingPublisher()
    response = api_client.get(
        "/webhooks/smart-link",
        params={"click_id": "abc123", "type": "new_subscriber", "link_id": "link_1"},
    )

    assert response.status_code == 500


@pytest.mark.parametrize("amount", ["1e30", "10000000000", "-5"])
def test_parse_postback_rejects_amounts_outside_stored_range(amount):
    with pytest.raises(PostbackValidationError) as excinfo:
        parse_postback({"click_id": "abc123", "type": "purchase", "link_id": "link_1", "net": amount})
    assert str(excinfo.value) == "Amount out of range for parameter: net"


def test_parse_postback_accepts_largest_stored_amount():
    event = parse_postback(
        {"click_id": "abc123", "type": "purchase", "link_id": "link_1", "gross": "9999999999.99"}
    )
    assert event.amount_gross == Decimal("9999999999.99")


def test_webhook_rejects_out_of_range_amount(api_client, recording_publisher):
    response = api_client.get(
        "/webhooks/smart-link",
        params={"click_id": "abc123", "type": "purchase", "link_id": "link_1", "net": "1e30"},
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Amount out of range for parameter: net"}
    assert recording_publisher.events == []
