"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM models inherit from BaseResponseSchema.
"""
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas that read from ORM models.

    Usage:
        class PayoutResponse(BaseResponseSchema):
            id: UUID
            net_amount_cents: int
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Base class for create/input schemas. Unknown fields are ignored."""
    model_config = ConfigDict(extra='ignore')


class StrictInputSchema(BaseModel):
    """Input schema that rejects unknown fields (fixed, enumerated configuration)."""
    model_config = ConfigDict(extra='forbid')
