from __future__ import annotations

from pydantic import BaseModel


class IsoImage(BaseModel):
    id: str
    name: str
    path: str
    size_mib: int
    uploaded_at: float
