"""Shared Pydantic base model for control API schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class HealthStackBase(BaseModel):
    """Base model with shared config for all HealthStack schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )
