import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    """
    Account row provisioned on first authenticated request.

    id is the JWT "sub"; role is "user" or "admin".
    """

    __tablename__ = "users"

    id: uuid.UUID = Field(primary_key=True, index=True)

    email: str = Field(unique=True, index=True)

    # Local part of the email at provisioning time
    name: str = Field(max_length=50)

    role: str = Field(default="user", index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
