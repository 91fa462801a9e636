from __future__ import annotations

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr


class UserRole(str, Enum):
    ORGANIZATION_ADMIN = "organization_admin"
    ORGANIZATION_USER = "organization_user"
    READ_ONLY_USER = "read_only_user"


class User(BaseModel):
    id: UUID
    email: EmailStr
    role: UserRole
    # Organization this user acts for. For the MVP we model this as a simple
    # string identifier (e.g., church slug or UUID string).
    organization_id: str
