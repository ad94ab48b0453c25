"""
SQLAlchemy ORM models for PharmaChain.
Tables: revoked_tokens

Batches and stakeholders live on the ledger; the database only backs the
shared credential revocation set when REVOCATION_DB_URL is configured.
"""

from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String(64), primary_key=True)
    subject = Column(String(64), nullable=True)     # wallet address, informational
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_revoked_tokens_expires_at", "expires_at"),
    )
