# agrimarket/models/base.py
from datetime import datetime
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict

class TimeStampedModel(BaseModel):
    """Base model for table rows with timestamp fields"""
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], **extra: Any):
        """Build from an asyncpg record; ``extra`` adds or overrides columns"""
        return cls.model_validate({**dict(row), **extra})
