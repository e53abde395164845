"""Base schema classes."""

from pydantic import BaseModel, ConfigDict


class BaseResponse(BaseModel):
    """Base for all output schemas with from_attributes config."""

    model_config = ConfigDict(from_attributes=True)


class Snapshot(BaseModel):
    """Immutable copy of a stored row, detached from the DB session."""

    model_config = ConfigDict(from_attributes=True, frozen=True)
