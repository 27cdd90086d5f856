"""Pydantic models describing registered components and triggers."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CapabilityDescriptor(BaseModel):
    """What the surrounding product needs to know to place a node."""

    name: str
    kind: Literal["component", "trigger"]
    label: Optional[str] = None
    description: Optional[str] = None
    configuration_schema: Dict[str, Any] = Field(default_factory=dict)
    output_channels: List[str] = Field(default_factory=list)
