"""Pydantic schemas for authenticated identities."""
from pydantic import BaseModel, ConfigDict, Field


class Principal(BaseModel):
    """Authenticated identity attached to a connection for its lifetime.

    Owned by the external identity system; this core never persists it.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable user ID")
    displayName: str = Field(..., description="Name shown to other users")
    email: str = Field(default="", description="User email")

    def public(self) -> dict:
        """Wire shape used by presence lists and DM `from` blocks."""
        return {"id": self.id, "name": self.displayName, "email": self.email}
