"""All models must be imported here so SQLAlchemy registers them."""

from app.models.core import CallList, CallListItem, Student, StudentPhone  # noqa: F401
from app.models.infrastructure import ImportRun  # noqa: F401
