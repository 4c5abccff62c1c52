"""
Startup validator for the deletion graph.

Child rows of stories, chapters, anchors and enhancements are removed by
ON DELETE CASCADE in the database. The ORM side must agree: every NOT NULL
foreign key to one of those parents declares ondelete="CASCADE", and the
parent's relationship to the child uses passive_deletes so SQLAlchemy leaves
the cascade to the database instead of loading and deleting children itself.
"""

import logging
from sqlalchemy.orm.interfaces import ONETOMANY
from ..database import Base

logger = logging.getLogger(__name__)

# Parent tables whose deletion must cascade in the database
PROTECTED_PARENTS = {"stories", "chapters", "anchors", "enhancements"}


def validate_cascade_relationships() -> list[str]:
    """
    Walk every mapped class and report foreign keys and relationships that
    would make the ORM emulate or fight a database cascade.

    Returns a list of error strings (empty = all good).
    """
    errors: list[str] = []

    # parent_table -> {child_table: passive_deletes}
    parent_relationships: dict[str, dict[str, bool]] = {t: {} for t in PROTECTED_PARENTS}

    # First pass: one-to-many relationships declared on protected parents
    for mapper in Base.registry.mappers:
        table = mapper.local_table
        if table is None or table.name not in PROTECTED_PARENTS:
            continue

        for rel in mapper.relationships:
            if rel.viewonly or rel.direction is not ONETOMANY:
                continue
            target_table = rel.mapper.local_table
            if target_table is None or target_table.name == table.name:
                continue
            passive = rel.passive_deletes is True or rel.passive_deletes == "all"
            if not passive:
                errors.append(
                    f"Relationship '{mapper.class_.__name__}.{rel.key}' covers "
                    f"'{target_table.name}' without passive_deletes=True; the ORM "
                    f"would delete children row by row instead of leaving it to "
                    f"ON DELETE CASCADE."
                )
            parent_relationships[table.name][target_table.name] = passive

    # Second pass: NOT NULL FKs pointing at protected parents
    for mapper in Base.registry.mappers:
        table = mapper.local_table
        if table is None:
            continue

        for col in table.columns:
            if not col.foreign_keys or col.nullable:
                continue

            for fk in col.foreign_keys:
                parent_table = fk.column.table.name
                child_table = table.name
                if parent_table not in PROTECTED_PARENTS or child_table == parent_table:
                    continue

                if (fk.ondelete or "").upper() != "CASCADE":
                    errors.append(
                        f"Column '{child_table}.{col.name}' is a NOT NULL FK to "
                        f"'{parent_table}' without ondelete=\"CASCADE\"."
                    )

                if child_table not in parent_relationships[parent_table]:
                    errors.append(
                        f"Table '{child_table}.{col.name}' has NOT NULL FK to "
                        f"'{parent_table}' but the parent model has no relationship "
                        f"covering '{child_table}'. Add a relationship with "
                        f"cascade=\"all, delete-orphan\", passive_deletes=True."
                    )

    return errors


def check_cascade_relationships() -> None:
    """Log every problem found by validate_cascade_relationships"""
    errors = validate_cascade_relationships()
    if not errors:
        logger.info("[SCHEMA] Cascade relationships validated")
        return
    for error in errors:
        logger.error(f"[SCHEMA] {error}")
