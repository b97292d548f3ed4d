from typing import Literal

from pydantic import BaseModel, EmailStr, Field

UserRole = Literal["staff", "manager"]


class SessionUser(BaseModel):
    """The authenticated caller, passed explicitly into every service call."""

    id: str
    display_name: str
    email: str = ""
    role: UserRole = "staff"

    @property
    def is_manager(self) -> bool:
        return self.role == "manager"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole
    active: bool

    model_config = {"from_attributes": True}


class UserCreateRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: UserRole = "staff"


class UserRoleUpdate(BaseModel):
    role: UserRole


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


