from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from smartlink.schemas.postback import PostbackEvent

REQUIRED_PARAMS = ("click_id", "type", "link_id")
MAX_AMOUNT = Decimal("9999999999.99")


class PostbackValidationError(ValueError):
    def __init__(self, message: str, *, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.missing = missing or []


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_decimal(name: str, raw: Optional[str]) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise PostbackValidationError(f"Invalid decimal for parameter: {name}") from exc
    if not value.is_finite():
        raise PostbackValidationError(f"Invalid decimal for parameter: {name}")
    # Stored as Numeric(12, 2).
    if value < 0 or value > MAX_AMOUNT:
        raise PostbackValidationError(f"Amount out of range for parameter: {name}")
    return value


def _parse_timestamp(raw: Optional[str]) -> datetime:
    if raw is None:
        return datetime.now(timezone.utc)
    try:
        if raw.replace(".", "", 1).isdigit():
            return datetime.fromtimestamp(float(raw), tz=timezone.utc)
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError) as exc:
        raise PostbackValidationError("Invalid timestamp for parameter: ts") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def derive_external_event_key(
    *,
    click_reference: str,
    conversion_type: str,
    conversion_at: datetime,
    transaction_id: Optional[str] = None,
) -> str:
    """
    Stable identity of an upstream conversion.

    An upstream transaction id wins. Otherwise the key is built from the click reference,
    the raw event type and the event time truncated to the second, so a redelivered postback
    maps to the same key.
    """
    if transaction_id:
        return f"tx:{transaction_id}"
    ts = conversion_at.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return f"click:{click_reference}:{conversion_type}:{ts}"


def derive_run_id(external_event_key: str) -> str:
    digest = hashlib.sha256(external_event_key.encode("utf-8")).hexdigest()
    return f"run_{digest[:32]}"


def parse_postback(params: Mapping[str, str]) -> PostbackEvent:
    """Validate a smart-link postback query string and build the event envelope."""
    values = {key: _clean(params.get(key)) for key in params.keys()}
    click_id = values.get("click_id") or values.get("ecid")
    present = {"click_id": click_id, "type": values.get("type"), "link_id": values.get("link_id")}
    missing = [name for name in REQUIRED_PARAMS if not present[name]]
    if missing:
        raise PostbackValidationError(
            f"Missing required parameters: {', '.join(missing)}",
            missing=missing,
        )

    external_click_id = values.get("ecid")
    conversion_type = present["type"]
    conversion_at = _parse_timestamp(values.get("ts"))
    transaction_id = values.get("tx_id")
    external_event_key = derive_external_event_key(
        click_reference=external_click_id or click_id,
        conversion_type=conversion_type,
        conversion_at=conversion_at,
        transaction_id=transaction_id,
    )

    return PostbackEvent(
        click_id=click_id,
        external_click_id=external_click_id,
        conversion_type=conversion_type,
        transaction_type=values.get("tx_type"),
        transaction_id=transaction_id,
        amount_gross=_parse_decimal("gross", values.get("gross")),
        amount_net=_parse_decimal("net", values.get("net")),
        fan_of_id=values.get("fan_id"),
        fan_username=values.get("fan_user"),
        creator_acct_id=values.get("creator_acct") or "",
        creator_username=values.get("creator_user"),
        smart_link_id=present["link_id"],
        smart_link_name=values.get("link_name"),
        conversion_at=conversion_at,
        external_event_key=external_event_key,
        run_id=derive_run_id(external_event_key),
    )
