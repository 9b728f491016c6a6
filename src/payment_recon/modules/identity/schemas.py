from __future__ import annotations

import uuid

from pydantic import BaseModel, EmailStr, Field

from payment_recon.modules.identity.models import UserRole


class UserOut(BaseModel):
    id: uuid.UUID
    email: EmailStr
    full_name: str | None
    role: UserRole
    is_active: bool


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str | None = Field(default=None, max_length=200)
    password: str = Field(min_length=8)
    role: UserRole = UserRole.FINANCE


class UserUpdate(BaseModel):
    role: UserRole | None = None
    is_active: bool | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
