from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# jsonb on Postgres, plain JSON text elsewhere (SQLite in local dev and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
