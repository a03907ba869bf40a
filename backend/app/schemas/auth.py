# app/schemas/auth.py
from pydantic import BaseModel, Field


class LoginIn(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    remember_me: bool = False
    message: str


class MessageOut(BaseModel):
    message: str


class TokenVerificationOut(BaseModel):
    valid: bool
    username: str
    role: str
    message: str


class SessionInfoOut(BaseModel):
    active_tokens: int
    total_rotations: int
