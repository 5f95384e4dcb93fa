"""State, tag, availability-zone and security-group filtering for parsed instances."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..config import TAG_WILDCARD, DiscoveryFilterConfig
from .models import InstanceRecord

logger = logging.getLogger(__name__)


class InstanceFilter:
    """Keeps instances that satisfy every configured predicate (AND)."""

    def __init__(self, config: DiscoveryFilterConfig):
        self._config = config
        self._tag_filters: dict[str, frozenset[str] | None] = {
            key: self._accepted_values(value) for key, value in config.tag_filters.items()
        }

    @staticmethod
    def _accepted_values(value: str | list[str]) -> frozenset[str] | None:
        """None means any value is accepted (wildcard)."""
        values = [value] if isinstance(value, str) else list(value)
        if TAG_WILDCARD in values:
            return None
        return frozenset(values)

    def apply(self, instances: Iterable[InstanceRecord]) -> list[InstanceRecord]:
        instances = list(instances)
        result = [inst for inst in instances if self.matches(inst)]
        filtered = len(instances) - len(result)
        if filtered:
            logger.info(
                "Instance filter removed %d of %d instances", filtered, len(instances),
                extra={"filtered": filtered},
            )
        return result

    def matches(self, instance: InstanceRecord) -> bool:
        config = self._config

        if instance.state != config.required_state:
            logger.debug("Instance %s is %s, not %s", instance.instance_id, instance.state.value,
                         config.required_state.value)
            return False

        for key, accepted in self._tag_filters.items():
            if key not in instance.tags:
                logger.debug("Instance %s has no tag %s", instance.instance_id, key)
                return False
            if accepted is not None and instance.tags[key] not in accepted:
                logger.debug("Instance %s tag %s=%s not accepted", instance.instance_id, key, instance.tags[key])
                return False

        if config.availability_zones and instance.availability_zone not in config.availability_zones:
            logger.debug("Instance %s is in zone %s", instance.instance_id, instance.availability_zone)
            return False

        if config.security_groups:
            if config.any_group:
                in_groups = not config.security_groups.isdisjoint(instance.security_groups)
            else:
                in_groups = config.security_groups <= instance.security_groups
            if not in_groups:
                logger.debug("Instance %s security groups %s do not match", instance.instance_id,
                             sorted(instance.security_groups))
                return False

        return True


def filter_instances(instances: Iterable[InstanceRecord], config: DiscoveryFilterConfig) -> list[InstanceRecord]:
    """Return the instances satisfying config, preserving input order."""
    return InstanceFilter(config).apply(instances)
