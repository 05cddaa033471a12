from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from forge.core.models import Patch


class VersionRequest(BaseModel):
    galaxy_id: str = Field(..., min_length=1)
    tag: str = ""
    status: Literal["completed", "active", "planned"] = "planned"
    patches: list[Patch] = Field(default_factory=list, description="Patch ids are issue ids")
