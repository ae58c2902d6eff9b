from typing import Literal

from pydantic import BaseModel, Field, field_validator

UserRole = Literal["buyer", "seller", "admin"]


class CurrentUserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: UserRole


class RegisterRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=200)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=256)
    role: Literal["buyer", "seller"] = "buyer"

    @field_validator("full_name", "email", mode="before")
    @classmethod
    def strip_whitespace(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in_seconds: int
    user: CurrentUserResponse
