from __future__ import annotations

import logging
import uuid

from app.crm.models import UserRole
from app.crm.repositories import EntityStore


logger = logging.getLogger("app.workflows.escalation")


class EscalationResolver:
    """Maps a business unit name to the user responsible for escalations.

    The active business unit's owner wins. Without one, any user holding the
    ``bu_head`` role is returned; when several exist the pick is arbitrary.
    Lookup errors are logged and resolve to ``None``. The store is rolled
    back first so a failed query cannot poison the caller's session, which
    means callers resolve before writing anything for the current entity.
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def find_escalation_owner(self, business_unit_name: str | None) -> uuid.UUID | None:
        try:
            if business_unit_name:
                business_unit = self.store.get_active_business_unit(business_unit_name)
                if business_unit is not None and business_unit.owner_user_id is not None:
                    return business_unit.owner_user_id

            owner_id = self.store.find_first_user_by_role(UserRole.BU_HEAD.value)
        except Exception as exc:
            self.store.rollback()
            logger.warning(
                "escalation_owner_lookup_failed",
                extra={"business_unit": business_unit_name, "error": str(exc)},
            )
            return None

        if owner_id is None:
            logger.info("escalation_owner_not_found", extra={"business_unit": business_unit_name})
        return owner_id
