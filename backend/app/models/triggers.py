"""
Database triggers that are part of the schema.

Deleting an enhancement removes the media rows tagged as owned by it
(``owner_type = 'enhancement'``, ``owner_id = <enhancement id>``). The rule
lives in the database so it also runs for enhancements removed by
``ON DELETE CASCADE`` from anchors, chapters and stories.
"""

from sqlalchemy import DDL, event
from ..database import Base

MEDIA_CLEANUP_TRIGGER = "cleanup_media_on_enhancement_delete"
MEDIA_CLEANUP_FUNCTION = "cleanup_enhancement_media"

SQLITE_CREATE_MEDIA_CLEANUP = f"""
CREATE TRIGGER IF NOT EXISTS {MEDIA_CLEANUP_TRIGGER}
AFTER DELETE ON enhancements
FOR EACH ROW
BEGIN
    DELETE FROM media WHERE owner_type = 'enhancement' AND owner_id = OLD.id;
END
"""

POSTGRES_CREATE_MEDIA_CLEANUP_FUNCTION = f"""
CREATE OR REPLACE FUNCTION {MEDIA_CLEANUP_FUNCTION}() RETURNS trigger AS $$
BEGIN
    DELETE FROM media WHERE owner_type = 'enhancement' AND owner_id = OLD.id;
    RETURN OLD;
END;
$$ LANGUAGE plpgsql
"""

POSTGRES_CREATE_MEDIA_CLEANUP = f"""
CREATE TRIGGER {MEDIA_CLEANUP_TRIGGER}
AFTER DELETE ON enhancements
FOR EACH ROW EXECUTE FUNCTION {MEDIA_CLEANUP_FUNCTION}()
"""

POSTGRES_DROP_MEDIA_CLEANUP_FUNCTION = f"DROP FUNCTION IF EXISTS {MEDIA_CLEANUP_FUNCTION}() CASCADE"


event.listen(
    Base.metadata,
    "after_create",
    DDL(SQLITE_CREATE_MEDIA_CLEANUP).execute_if(dialect="sqlite"),
)
event.listen(
    Base.metadata,
    "after_create",
    DDL(POSTGRES_CREATE_MEDIA_CLEANUP_FUNCTION).execute_if(dialect="postgresql"),
)
event.listen(
    Base.metadata,
    "after_create",
    DDL(POSTGRES_CREATE_MEDIA_CLEANUP).execute_if(dialect="postgresql"),
)
event.listen(
    Base.metadata,
    "after_drop",
    DDL(POSTGRES_DROP_MEDIA_CLEANUP_FUNCTION).execute_if(dialect="postgresql"),
)
