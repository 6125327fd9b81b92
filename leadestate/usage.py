"""
leadestate/usage.py

Resource usage counting against plan limits.

Scoping rule (applied to every resource type): a row belongs to a tenant
when its agency_id equals the tenant id. Rows merely assigned to or listed by
one of the tenant's users are not counted separately.

Limits are soft: counting and creating are not done in one transaction, so
concurrent creations right at the boundary may overshoot by a small margin.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from leadestate.db import Database, STORE_ERRORS, fetch_count
from leadestate.plans import ResourceType
from leadestate.subscriptions import SubscriptionStoreError

# Resource type -> table holding it (whitelist; never interpolate user input)
RESOURCE_TABLES: Dict[ResourceType, str] = {
    ResourceType.LEADS: "leads",
    ResourceType.USERS: "users",
    ResourceType.PROPERTIES: "properties",
}


@dataclass(frozen=True)
class UsageSnapshot:
    resource_type: ResourceType
    current_count: int
    max_allowed: Optional[int]  # None = unlimited

    @property
    def remaining(self) -> Optional[int]:
        if self.max_allowed is None:
            return None
        return max(0, self.max_allowed - self.current_count)

    @property
    def is_unlimited(self) -> bool:
        return self.max_allowed is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "resourceType": self.resource_type.value,
            "currentCount": self.current_count,
            "maxAllowed": self.max_allowed if self.max_allowed is not None else "unlimited",
            "remaining": self.remaining if self.remaining is not None else "unlimited",
        }


@dataclass(frozen=True)
class LimitCheck:
    within_limit: bool
    usage: UsageSnapshot


def evaluate_limit(resource_type: ResourceType, current_count: int, max_allowed: Optional[int]) -> LimitCheck:
    """
    Compare a count against a limit.

    Reaching the limit blocks the next creation: within_limit is
    current_count < max_allowed. An unlimited (None) limit is always within.
    """
    usage = UsageSnapshot(
        resource_type=ResourceType(resource_type),
        current_count=max(0, current_count),
        max_allowed=max_allowed,
    )
    if max_allowed is None:
        return LimitCheck(within_limit=True, usage=usage)
    return LimitCheck(within_limit=usage.current_count < max_allowed, usage=usage)


class UsageCounter:
    """Counts tenant-owned rows in the resource tables."""

    def __init__(self, database: Database):
        self.database = database

    def count_usage(self, tenant_id: str, resource_type: ResourceType) -> int:
        """
        Number of resources of this type owned by the tenant (always >= 0).

        Raises:
            SubscriptionStoreError: If the store cannot be queried
        """
        table = RESOURCE_TABLES[ResourceType(resource_type)]
        try:
            with self.database.connect() as conn:
                return fetch_count(
                    conn,
                    f"SELECT COUNT(*) AS n FROM {table} WHERE agency_id = ?",
                    (tenant_id,),
                )
        except STORE_ERRORS as e:
            print(f"[USAGE] Count failed for tenant={tenant_id}, resource={table}: {e}")
            raise SubscriptionStoreError(f"Failed to count {table}") from e

    def check_limit(
        self,
        tenant_id: str,
        resource_type: ResourceType,
        resolved_limits: Mapping[ResourceType, Optional[int]],
    ) -> LimitCheck:
        """
        Check whether the tenant may create one more resource of this type.

        Args:
            tenant_id: Agency id
            resource_type: Resource being created
            resolved_limits: Limits from the tenant's AccessDecision

        Returns:
            LimitCheck with the UsageSnapshot used for the decision
        """
        resource_type = ResourceType(resource_type)
        max_allowed = resolved_limits.get(resource_type, 0)
        return evaluate_limit(resource_type, self.count_usage(tenant_id, resource_type), max_allowed)

    def usage_summary(
        self,
        tenant_id: str,
        resolved_limits: Mapping[ResourceType, Optional[int]],
    ) -> Dict[ResourceType, UsageSnapshot]:
        """Usage snapshot for every resource type (status endpoints)."""
        return {
            resource_type: evaluate_limit(
                resource_type,
                self.count_usage(tenant_id, resource_type),
                resolved_limits.get(resource_type, 0),
            ).usage
            for resource_type in ResourceType
        }
