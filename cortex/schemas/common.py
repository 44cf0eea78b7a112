from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class RecordModel(BaseModel):
    """Base model with ORM/dataclass attribute support enabled."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())
