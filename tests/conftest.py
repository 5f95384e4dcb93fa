"""Shared fixtures: DescribeInstances XML builders and an in-memory fake fetcher."""

from __future__ import annotations

import threading
import xml.etree.ElementTree as ET

import pytest

from cloud_peer_discovery.discovery.parser import XmlResponseFormat
from cloud_peer_discovery.exceptions import RefreshCancelled

EC2_NAMESPACE = "http://ec2.amazonaws.com/doc/2013-02-01/"


def _add(parent: ET.Element, tag: str, text: str | None) -> None:
    if text is not None:
        ET.SubElement(parent, tag).text = text


def instance(
    instance_id: str = "i-0001",
    private_ip: str | None = "10.0.0.1",
    public_ip: str | None = None,
    state_code: int | None = 16,
    state_name: str | None = "running",
    az: str | None = "us-east-1e",
    tags: dict[str, str] | None = None,
    groups: list[tuple[str, str]] | None = None,
    private_dns: str | None = None,
    public_dns: str | None = None,
    launch_time: str | None = None,
) -> dict:
    """Instance fixture data, rendered by ``describe_instances_xml``."""
    return {
        "instance_id": instance_id,
        "private_ip": private_ip,
        "public_ip": public_ip,
        "state_code": state_code,
        "state_name": state_name,
        "az": az,
        "tags": tags or {},
        "groups": groups or [],
        "private_dns": private_dns,
        "public_dns": public_dns,
        "launch_time": launch_time,
    }


def describe_instances_xml(
    reservations: list[list[dict]],
    next_token: str | None = None,
    namespace: str | None = EC2_NAMESPACE,
    request_id: str = "req-1",
) -> bytes:
    """Render a DescribeInstancesResponse document, one list of instances per reservation."""
    root = ET.Element("DescribeInstancesResponse")
    if namespace:
        root.set("xmlns", namespace)
    _add(root, "requestId", request_id)
    reservation_set = ET.SubElement(root, "reservationSet")
    for r_index, members in enumerate(reservations, start=1):
        item = ET.SubElement(reservation_set, "item")
        _add(item, "reservationId", f"r-{r_index:04d}")
        instances_set = ET.SubElement(item, "instancesSet")
        for member in members:
            inst = ET.SubElement(instances_set, "item")
            _add(inst, "instanceId", member["instance_id"])
            _add(inst, "imageId", "ami-1234")
            state = ET.SubElement(inst, "instanceState")
            _add(state, "code", None if member["state_code"] is None else str(member["state_code"]))
            _add(state, "name", member["state_name"])
            _add(inst, "privateDnsName", member["private_dns"] or "")
            _add(inst, "dnsName", member["public_dns"] or "")
            _add(inst, "instanceType", "m1.medium")
            _add(inst, "launchTime", member["launch_time"])
            placement = ET.SubElement(inst, "placement")
            _add(placement, "availabilityZone", member["az"])
            _add(placement, "groupName", "")
            _add(placement, "tenancy", "default")
            _add(inst, "privateIpAddress", member["private_ip"])
            _add(inst, "ipAddress", member["public_ip"])
            if member["groups"]:
                group_set = ET.SubElement(inst, "groupSet")
                for group_id, group_name in member["groups"]:
                    group = ET.SubElement(group_set, "item")
                    _add(group, "groupId", group_id)
                    _add(group, "groupName", group_name)
            if member["tags"]:
                tag_set = ET.SubElement(inst, "tagSet")
                for key, value in member["tags"].items():
                    tag = ET.SubElement(tag_set, "item")
                    _add(tag, "key", key)
                    _add(tag, "value", value)
    _add(root, "nextToken", next_token)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class FakeFetcher:
    """Serves fixture pages keyed by continuation token (None = first page).

    ``gate`` holds every fetch until it is set; ``error`` is raised instead of serving.
    ``peak`` records the most fetches that were ever running at the same time.
    """

    def __init__(self, bodies: dict[str | None, bytes], gate: threading.Event | None = None):
        self.response_format = XmlResponseFormat()
        self.bodies = bodies
        self.gate = gate
        self.error: BaseException | None = None
        self.runs = 0
        self.requests: list[str | None] = []
        self.started = threading.Event()
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def fetch(self, query, next_token=None, should_stop=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            self.started.set()
            if self.gate is not None:
                self.gate.wait(5)
            if should_stop is not None and should_stop():
                raise RefreshCancelled("fake fetch called off")
            self.requests.append(next_token)
            if self.error is not None:
                raise self.error
            return self.response_format.read_page(self.bodies[next_token])
        finally:
            with self._lock:
                self.active -= 1

    def fetch_all(self, query, should_stop=None):
        self.runs += 1
        next_token = None
        while True:
            page = self.fetch(query, next_token, should_stop)
            yield page
            next_token = page.next_token
            if not next_token:
                return


@pytest.fixture
def make_instance():
    return instance


@pytest.fixture
def make_xml():
    return describe_instances_xml


@pytest.fixture
def make_fetcher():
    return FakeFetcher
