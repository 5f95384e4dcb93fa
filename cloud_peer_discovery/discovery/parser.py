"""Inventory response parsers, one ResponseFormat per supported wire format.

Both formats turn a DescribeInstances page into InstanceRecord objects. Per-instance
anomalies (missing optional fields, unknown state codes, extra elements) are handled
locally; only an envelope that cannot be interpreted raises MalformedResponse.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any

from ..exceptions import ConfigError, MalformedResponse
from .models import InstanceRecord, InstanceState, RawPage, state_from_code

logger = logging.getLogger(__name__)

XML_ROOT = "DescribeInstancesResponse"


def _parse_state(code: Any, name: str | None) -> InstanceState:
    """Map a numeric state code via the lookup table; fall back to the name when the code is absent."""
    if code is not None and code != "":
        try:
            return state_from_code(int(code))
        except (TypeError, ValueError):
            logger.debug("Non-numeric instance state code %r, using name %r", code, name)
    return InstanceState.from_name(name)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 launch time, always returning a timezone-aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparsable launch time %r", value)
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ── Query API (XML) ──────────────────────────────────────────────────


def _local(tag: str) -> str:
    """Strip the '{namespace}' prefix ElementTree puts on qualified tags."""
    return tag.rsplit("}", 1)[-1]


def _child(elem: ET.Element, name: str) -> ET.Element | None:
    for child in elem:
        if _local(child.tag) == name:
            return child
    return None


def _text(elem: ET.Element, name: str) -> str | None:
    child = _child(elem, name)
    if child is None:
        return None
    return _blank_to_none(child.text)


def _items(elem: ET.Element, container: str) -> list[ET.Element]:
    holder = _child(elem, container)
    if holder is None:
        return []
    return [c for c in holder if _local(c.tag) == "item"]


class XmlResponseFormat:
    """DescribeInstancesResponse XML as returned by the EC2 query API."""

    name = "query"

    def read_page(self, body: bytes | str) -> RawPage:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as exc:
            raise MalformedResponse(f"Unparsable inventory response: {exc}") from exc

        if _local(root.tag) != XML_ROOT:
            raise MalformedResponse(f"Expected <{XML_ROOT}> root element, got <{_local(root.tag)}>")
        if _child(root, "reservationSet") is None:
            raise MalformedResponse("Inventory response has no <reservationSet>")

        return RawPage(
            document=root,
            next_token=_text(root, "nextToken"),
            request_id=_text(root, "requestId"),
        )

    def parse_response(self, page: RawPage) -> list[InstanceRecord]:
        records: list[InstanceRecord] = []
        for reservation in _items(page.document, "reservationSet"):
            reservation_id = _text(reservation, "reservationId")
            instances = _items(reservation, "instancesSet")
            if not instances:
                logger.debug("Reservation %s has no instances, skipping", reservation_id)
                continue
            for raw in instances:
                record = self.parse_instance(raw, reservation_id)
                if record is not None:
                    records.append(record)
        return records

    def parse_instance(self, raw: ET.Element, reservation_id: str | None = None) -> InstanceRecord | None:
        instance_id = _text(raw, "instanceId")
        if not instance_id:
            logger.warning("Instance in reservation %s has no instanceId, skipping", reservation_id)
            return None

        state_elem = _child(raw, "instanceState")
        if state_elem is not None:
            state = _parse_state(_text(state_elem, "code"), _text(state_elem, "name"))
        else:
            state = InstanceState.UNKNOWN

        tags: dict[str, str] = {}
        for item in _items(raw, "tagSet"):
            key = _text(item, "key")
            if key:
                tags[key] = _text(item, "value") or ""

        groups: set[str] = set()
        for item in _items(raw, "groupSet"):
            groups.update(g for g in (_text(item, "groupId"), _text(item, "groupName")) if g)

        placement = _child(raw, "placement")
        availability_zone = _text(placement, "availabilityZone") if placement is not None else None

        return InstanceRecord(
            instance_id=instance_id,
            state=state,
            private_address=_text(raw, "privateIpAddress"),
            public_address=_text(raw, "ipAddress"),
            private_dns_name=_text(raw, "privateDnsName"),
            public_dns_name=_text(raw, "dnsName"),
            availability_zone=availability_zone,
            tags=tags,
            security_groups=frozenset(groups),
            instance_type=_text(raw, "instanceType"),
            image_id=_text(raw, "imageId"),
            reservation_id=reservation_id,
            launch_time=_parse_timestamp(_text(raw, "launchTime")),
        )


# ── SDK (boto3) ──────────────────────────────────────────────────────


class SdkResponseFormat:
    """describe_instances response dicts as returned by a boto3 EC2 client."""

    name = "sdk"

    def read_page(self, body: dict[str, Any]) -> RawPage:
        if not isinstance(body, dict) or not isinstance(body.get("Reservations"), list):
            raise MalformedResponse("Inventory response has no 'Reservations' list")
        metadata = body.get("ResponseMetadata") or {}
        return RawPage(
            document=body,
            next_token=_blank_to_none(body.get("NextToken")),
            request_id=metadata.get("RequestId"),
        )

    def parse_response(self, page: RawPage) -> list[InstanceRecord]:
        records: list[InstanceRecord] = []
        for reservation in page.document.get("Reservations", []):
            if not isinstance(reservation, dict):
                logger.warning("Ignoring non-mapping reservation entry: %r", reservation)
                continue
            reservation_id = reservation.get("ReservationId")
            instances = reservation.get("Instances") or []
            if not instances:
                logger.debug("Reservation %s has no instances, skipping", reservation_id)
                continue
            for raw in instances:
                record = self.parse_instance(raw, reservation_id)
                if record is not None:
                    records.append(record)
        return records

    def parse_instance(self, raw: dict[str, Any], reservation_id: str | None = None) -> InstanceRecord | None:
        if not isinstance(raw, dict) or not raw.get("InstanceId"):
            logger.warning("Instance in reservation %s has no InstanceId, skipping", reservation_id)
            return None

        state_raw = raw.get("State") or {}
        state = _parse_state(state_raw.get("Code"), state_raw.get("Name"))

        tags = {
            t["Key"]: t.get("Value") or ""
            for t in raw.get("Tags") or []
            if isinstance(t, dict) and t.get("Key")
        }

        groups: set[str] = set()
        for group in raw.get("SecurityGroups") or []:
            if isinstance(group, dict):
                groups.update(g for g in (group.get("GroupId"), group.get("GroupName")) if g)

        placement = raw.get("Placement") or {}

        return InstanceRecord(
            instance_id=raw["InstanceId"],
            state=state,
            private_address=_blank_to_none(raw.get("PrivateIpAddress")),
            public_address=_blank_to_none(raw.get("PublicIpAddress")),
            private_dns_name=_blank_to_none(raw.get("PrivateDnsName")),
            public_dns_name=_blank_to_none(raw.get("PublicDnsName")),
            availability_zone=_blank_to_none(placement.get("AvailabilityZone")),
            tags=tags,
            security_groups=frozenset(groups),
            instance_type=raw.get("InstanceType"),
            image_id=raw.get("ImageId"),
            reservation_id=reservation_id,
            launch_time=_parse_timestamp(raw.get("LaunchTime")),
        )


RESPONSE_FORMATS: dict[str, type] = {
    XmlResponseFormat.name: XmlResponseFormat,
    SdkResponseFormat.name: SdkResponseFormat,
}


def response_format_for(wire_format: str) -> XmlResponseFormat | SdkResponseFormat:
    """Instantiate the response format for a configured wire format."""
    try:
        return RESPONSE_FORMATS[wire_format]()
    except KeyError:
        raise ConfigError(f"Unsupported wire format: {wire_format!r}") from None
