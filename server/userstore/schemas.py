"""
Pydantic schemas for the user accounts API.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class AddUserRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


class UserInfoResponse(BaseModel):
    userId: int
    username: str
    email: str


class StorageResponse(BaseModel):
    storage: dict
