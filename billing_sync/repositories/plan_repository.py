"""Plan repository - read-only access to the plan catalog.

Loads from config/billing.yaml and provides lookup methods.
"""

from typing import Dict, List, Optional

from billing_sync.config import Config, get_config
from billing_sync.models import PlanDefinition


class PlanNotFoundError(Exception):
    """Raised when a plan is not found in the catalog."""

    pass


class PlanRepository:
    """Repository for plan definitions.

    Thread-safe for read operations; the catalog never changes after load.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        plans: Optional[List[PlanDefinition]] = None,
    ):
        """Initialize plan repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
            plans: Explicit plan list; takes precedence over config.
        """
        self._plans_by_id: Dict[str, PlanDefinition] = {}
        if plans is None:
            plans = (config or get_config()).plans
        for plan in plans:
            self._plans_by_id[plan.id] = plan

    def get_by_id(self, plan_id: str) -> PlanDefinition:
        """Get plan definition by ID.

        Raises:
            PlanNotFoundError: If plan ID not found
        """
        plan = self._plans_by_id.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(
                f"Plan not found: {plan_id}. "
                f"Available plans: {list(self._plans_by_id.keys())}"
            )
        return plan

    def find_by_id(self, plan_id: str) -> Optional[PlanDefinition]:
        """Find plan definition by ID (returns None if not found)."""
        return self._plans_by_id.get(plan_id)

    def family_of(self, plan_id: str) -> str:
        """Get the family a plan belongs to.

        Raises:
            PlanNotFoundError: If plan ID not found
        """
        return self.get_by_id(plan_id).family

    def get_all(self) -> List[PlanDefinition]:
        """Get all plan definitions."""
        return list(self._plans_by_id.values())

    def get_by_family(self, family: str) -> List[PlanDefinition]:
        """Get every plan in a family."""
        return [p for p in self._plans_by_id.values() if p.family == family]

    def exists(self, plan_id: str) -> bool:
        return plan_id in self._plans_by_id

    def count(self) -> int:
        return len(self._plans_by_id)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, plan_id: str) -> bool:
        return self.exists(plan_id)

    def __repr__(self) -> str:
        return f"PlanRepository(plans={self.count()})"
