import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

ADMIN_ROLES = frozenset({"admin", "service_role"})


class AuthUser(BaseModel):
    """
    Represents an authenticated user from a Supabase JWT.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"

    model_config = ConfigDict(populate_by_name=True)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def uuid(self) -> uuid.UUID:
        """The subject claim as the users table primary key."""
        return uuid.UUID(self.user_id)
