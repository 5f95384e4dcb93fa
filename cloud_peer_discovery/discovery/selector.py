"""Maps filtered instances to peer endpoints according to the address-preference policy."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..config import AddressPreference, AddressType, EndpointSelectionPolicy
from .models import InstanceRecord, PeerEndpoint

logger = logging.getLogger(__name__)


def _addresses(instance: InstanceRecord, address_type: AddressType) -> tuple[str | None, str | None]:
    """(private, public) hosts for the configured address type."""
    if address_type is AddressType.DNS:
        return instance.private_dns_name, instance.public_dns_name
    return instance.private_address, instance.public_address


def select_endpoint(instance: InstanceRecord, policy: EndpointSelectionPolicy) -> PeerEndpoint | None:
    """Pick at most one endpoint for an instance. The port always comes from the policy."""
    private, public = _addresses(instance, policy.address_type)
    preference = policy.preference

    if preference is AddressPreference.PREFER_PRIVATE:
        host = private or public
    elif preference is AddressPreference.PREFER_PUBLIC:
        host = public or private
    elif preference is AddressPreference.PRIVATE_ONLY:
        host = private
    else:
        host = public

    if not host:
        logger.debug("Instance %s has no address usable under %s", instance.instance_id, preference.value)
        return None
    return PeerEndpoint(host=host, port=policy.port)


def select_endpoints(instances: Iterable[InstanceRecord], policy: EndpointSelectionPolicy) -> frozenset[PeerEndpoint]:
    """De-duplicated endpoints for every instance that has a usable address."""
    endpoints: set[PeerEndpoint] = set()
    for instance in instances:
        endpoint = select_endpoint(instance, policy)
        if endpoint is not None:
            endpoints.add(endpoint)
    return frozenset(endpoints)
