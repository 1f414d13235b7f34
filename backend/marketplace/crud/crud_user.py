from sqlalchemy.orm import Session, sessionmaker
from typing import Optional

from .. import models
from ..database import SessionLocal, get_db_session
from ..utils.auth import get_password_hash, normalize_email
from ..utils.errors import NotFound


class CRUDUser:
    def get_user(self, db: Session, user_id: int) -> Optional[models.User]:
        return db.query(models.User).filter(models.User.id == user_id).first()

    def get_user_by_email(self, db: Session, email: str) -> Optional[models.User]:
        return db.query(models.User).filter(models.User.email == normalize_email(email)).first()

    def create_user(
        self,
        db: Session,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        user_type: models.UserType = models.UserType.CLIENT,
        payout_account_id: Optional[str] = None,
    ) -> models.User:
        db_user = models.User(
            email=normalize_email(email),
            password=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            user_type=user_type,
            payout_account_id=payout_account_id,
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        return db_user


user = CRUDUser() # Create an instance for easy import


class UserDirectory:
    """Read-only user lookups for services that run outside a request session."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def get(self, user_id: int) -> models.User:
        with get_db_session(self._session_factory) as db:
            found = user.get_user(db, user_id)
        if found is None:
            raise NotFound(f"User {user_id} not found.")
        return found

    def payout_account_for(self, user_id: int) -> Optional[str]:
        """Connected payout account of a provider, or None when not onboarded."""
        try:
            return self.get(user_id).payout_account_id or None
        except NotFound:
            return None

    def get_by_email(self, email: str) -> Optional[models.User]:
        with get_db_session(self._session_factory) as db:
            return user.get_user_by_email(db, email)
