from pydantic import BaseModel
from typing import Optional


class UserSummary(BaseModel):
    id: int
    full_name: Optional[str] = None
    email: str

    class Config:
        from_attributes = True
