from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, EmailStr, Field, model_validator

from circulation.db.models import UserRole


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: UserRole
    is_active: bool
    is_built_in: bool
    is_blocked: bool
    block_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    password: Optional[str] = Field(None, min_length=6, max_length=128)


class BlockStateUpdate(BaseModel):
    is_blocked: bool
    block_reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def reason_required_when_blocking(self):
        if self.is_blocked and not (self.block_reason and self.block_reason.strip()):
            raise ValueError("block_reason is required when blocking an account")
        return self


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    page: int
    size: int
    pages: int
