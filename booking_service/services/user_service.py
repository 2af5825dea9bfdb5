import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models.user import User
from ..schemas.user import RegisterRequest
from ..utils.clock import utcnow
from ..utils.security import hash_password, verify_password

logger = logging.getLogger(__name__)


class UserStore:
    """Persisted users. Emails are stored lower-cased."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def create(self, data: RegisterRequest) -> User:
        email = data.email.strip().lower()
        if self.find_by_email(email):
            raise ValidationError("Email is already registered", "email_taken")

        user = User(
            email=email,
            hashed_password=hash_password(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
            phone=data.phone,
        )
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Email is already registered", "email_taken")

        logger.info(f"Registered user {user.id}")
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.find_by_email(email)
        if not user or not verify_password(password, user.hashed_password):
            return None
        user.last_login = utcnow()
        self.db.commit()
        return user
