"""Generic document row backing every collection of the SQL document store."""

from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin


class Document(TimestampMixin, SQLModel, table=True):
    __tablename__ = "documents"

    collection: str = Field(primary_key=True, max_length=64)
    key: str = Field(primary_key=True, max_length=128)
    body: Optional[dict] = Field(default=None, sa_type=sa.JSON(none_as_null=True))  # None = deleted
    version: int = Field(default=1, nullable=False)
