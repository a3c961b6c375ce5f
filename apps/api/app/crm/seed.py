from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import BusinessUnit, BusinessUnitStatus


logger = logging.getLogger("app.crm.seed")

DEFAULT_BUSINESS_UNITS: tuple[tuple[str, str], ...] = (
    ("Creative", "Creative design and branding services"),
    ("Digital Marketing", "Digital marketing and advertising services"),
    ("Content Production", "Content creation and production services"),
    ("Media Planning", "Media strategy and planning services"),
    ("Strategy", "Strategic consulting and planning services"),
)


def init_default_business_units(session: Session) -> list[str]:
    """Create whichever default business units are missing and return their names."""
    existing_names = set(session.scalars(select(BusinessUnit.name)).all())
    created: list[str] = []
    for name, description in DEFAULT_BUSINESS_UNITS:
        if name in existing_names:
            continue
        session.add(BusinessUnit(name=name, description=description, status=BusinessUnitStatus.ACTIVE.value))
        created.append(name)

    if created:
        session.commit()
    logger.info(
        "default_business_units_seeded",
        extra={"processed": len(created), "skipped": len(DEFAULT_BUSINESS_UNITS) - len(created)},
    )
    return created
