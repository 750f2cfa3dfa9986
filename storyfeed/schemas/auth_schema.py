from pydantic import BaseModel, Field
from typing import Optional

class Identity(BaseModel):
    """Verified caller identity resolved from a bearer credential"""
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def default_display_name(self) -> str:
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Anonymous"
