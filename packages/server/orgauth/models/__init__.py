# SQLModel definitions: imported here to ensure metadata is populated for create_all.
from .base import TimestampMixin  # noqa: F401
from .document import Document  # noqa: F401
