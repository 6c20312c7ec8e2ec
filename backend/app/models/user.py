# app/models/user.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from app.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)
    # Set once, at the first checkout. Never overwritten afterwards.
    stripe_customer_id = Column(String(255), unique=True, nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    # Bumped to invalidate outstanding access tokens.
    token_version = Column(Integer, nullable=False, server_default="0", default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
