"""
Credential revocation set.

Two stores share one interface:
  MemoryRevocationStore — single synchronized dict, per process (default)
  SqlRevocationStore    — revoked_tokens table, shared across replicas

Entries are keyed by the token's ``jti`` and carry the token's natural
expiry; once a token would have expired anyway the entry can be purged.
A jti is never removed before that point.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import create_engine, delete, select, text
from sqlalchemy.exc import IntegrityError as SqlIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from api.models.db_models import Base, RevokedToken
from common.errors import RevocationStoreUnavailable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevocationStore:
    """Interface: add / contains / purge_expired / ping."""

    def add(self, jti: str, expires_at: datetime, subject: Optional[str] = None) -> None:
        raise NotImplementedError

    def contains(self, jti: str) -> bool:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


class MemoryRevocationStore(RevocationStore):

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def add(self, jti: str, expires_at: datetime, subject: Optional[str] = None) -> None:
        with self._lock:
            # first revocation wins; never shorten or extend an entry
            self._entries.setdefault(jti, expires_at)

    def contains(self, jti: str) -> bool:
        with self._lock:
            return jti in self._entries

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [jti for jti, exp in self._entries.items() if exp <= now]
            for jti in expired:
                del self._entries[jti]
        if expired:
            logger.debug("Purged %d expired revocation entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SqlRevocationStore(RevocationStore):
    """
    Revocation set in the ``revoked_tokens`` table (see migrations/).
    Every SQLAlchemy failure surfaces as RevocationStoreUnavailable so the
    token manager can degrade to structural verification.
    """

    def __init__(self, database_url: str, clock: Callable[[], datetime] = _utcnow, create_tables: bool = False):
        self.engine = create_engine(database_url, pool_pre_ping=True)
        self._Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._clock = clock
        if create_tables:
            Base.metadata.create_all(self.engine)

    def add(self, jti: str, expires_at: datetime, subject: Optional[str] = None) -> None:
        db = self._Session()
        try:
            if db.get(RevokedToken, jti) is None:
                db.add(RevokedToken(jti=jti, subject=subject, expires_at=expires_at))
                db.commit()
        except SqlIntegrityError:
            # concurrent revocation of the same jti already landed
            db.rollback()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Revocation store write failed: %s", e)
            raise RevocationStoreUnavailable(details={"operation": "add"})
        finally:
            db.close()

    def contains(self, jti: str) -> bool:
        db = self._Session()
        try:
            return db.execute(
                select(RevokedToken.jti).where(RevokedToken.jti == jti)
            ).first() is not None
        except SQLAlchemyError as e:
            logger.error("Revocation store read failed: %s", e)
            raise RevocationStoreUnavailable(details={"operation": "contains"})
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self._Session()
        try:
            result = db.execute(delete(RevokedToken).where(RevokedToken.expires_at <= self._clock()))
            db.commit()
            if result.rowcount:
                logger.info("Purged %d expired revocation rows", result.rowcount)
            return result.rowcount or 0
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Revocation purge failed: %s", e)
            raise RevocationStoreUnavailable(details={"operation": "purge"})
        finally:
            db.close()

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Revocation store ping failed: %s", e)
            return False

    def dispose(self) -> None:
        self.engine.dispose()
