"""Data models for discovered instances, peer endpoints and discovery snapshots."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any


class InstanceState(str, enum.Enum):
    """EC2 instance lifecycle state. UNKNOWN is the sentinel for unrecognized codes."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: str | None) -> InstanceState:
        """Map a state name ('running', 'Shutting_Down', ...) to a member, UNKNOWN if unrecognized."""
        if not name:
            return cls.UNKNOWN
        normalized = name.strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        return cls.UNKNOWN


# Only the low byte is meaningful; the high byte is reserved for internal use by EC2.
STATE_CODES: dict[int, InstanceState] = {
    0: InstanceState.PENDING,
    16: InstanceState.RUNNING,
    32: InstanceState.SHUTTING_DOWN,
    48: InstanceState.TERMINATED,
    64: InstanceState.STOPPING,
    80: InstanceState.STOPPED,
}


def state_from_code(code: int) -> InstanceState:
    return STATE_CODES.get(code & 0xFF, InstanceState.UNKNOWN)


@dataclass(frozen=True)
class InstanceRecord:
    """A single instance parsed from one inventory page. Lives for one discovery cycle."""

    instance_id: str
    state: InstanceState
    private_address: str | None = None
    public_address: str | None = None
    private_dns_name: str | None = None
    public_dns_name: str | None = None
    availability_zone: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict, hash=False)
    security_groups: frozenset[str] = field(default_factory=frozenset)
    instance_type: str | None = None
    image_id: str | None = None
    reservation_id: str | None = None
    launch_time: datetime | None = None

    def __post_init__(self):
        # Read-only copies keep the record a value; tags stay out of the hash
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))
        object.__setattr__(self, "security_groups", frozenset(self.security_groups))

    @property
    def name(self) -> str:
        """The Name tag when present, else the instance id."""
        return self.tags.get("Name", self.instance_id)


@dataclass(frozen=True, order=True)
class PeerEndpoint:
    """A (host, port) pair handed to the membership layer as a candidate cluster member."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class RawPage:
    """One decoded inventory response page."""

    document: Any  # ElementTree root for the query API, response dict for the SDK
    next_token: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class DiscoverySnapshot:
    """The endpoint set produced by one completed discovery cycle. Never mutated once published."""

    cycle_id: int
    endpoints: frozenset[PeerEndpoint] = field(default_factory=frozenset)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    instance_count: int = 0

    @classmethod
    def empty(cls) -> DiscoverySnapshot:
        return cls(cycle_id=0)

    def __len__(self) -> int:
        return len(self.endpoints)

    def __contains__(self, endpoint: object) -> bool:
        return endpoint in self.endpoints

    def sorted_endpoints(self) -> list[PeerEndpoint]:
        return sorted(self.endpoints)

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds()
