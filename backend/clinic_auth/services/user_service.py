"""User service - credential lookup and account management"""

from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import Optional
from clinic_auth.config import settings
from clinic_auth.models.user import User
from clinic_auth.schemas.user import UserCreate, UserRole
from clinic_auth.core.security import get_password_hash, verify_password
from clinic_auth.core.exceptions import DuplicateUsernameError
import logging

logger = logging.getLogger(__name__)

# Compared against when the identifier is unknown so both failure paths cost one bcrypt check.
_DUMMY_HASH = get_password_hash("clinic-auth-dummy-password")


class UserService:
    """Service for user lookup and management"""

    @staticmethod
    def create_user(db: Session, user_data: UserCreate) -> User:
        """
        Create new user

        Args:
            db: Database session
            user_data: User creation data

        Returns:
            Created user
        """
        username = user_data.username.lower()
        email = user_data.email.lower()
        existing = (
            db.query(User)
            .filter((User.username == username) | (func.lower(User.email) == email))
            .first()
        )
        if existing:
            raise DuplicateUsernameError(username)

        user = User(
            username=username,
            email=email,
            full_name=user_data.full_name,
            password_hash=get_password_hash(user_data.password),
            role=user_data.role.value,
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user: {user.username} (role: {user.role})")
        return user

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_username(db: Session, username: str) -> Optional[User]:
        """Get user by username"""
        return db.query(User).filter(User.username == username.strip().lower()).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by email (case-insensitive)"""
        return db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()

    @staticmethod
    def get_user_by_identifier(db: Session, identifier: str) -> Optional[User]:
        """Resolve a login identifier, which may be a username or an email"""
        if "@" in identifier:
            return UserService.get_user_by_email(db, identifier)
        return UserService.get_user_by_username(db, identifier)

    @staticmethod
    def verify_credentials(db: Session, identifier: str, password: str) -> Optional[User]:
        """
        Check a username/email and password pair

        Returns:
            The active user on success, None otherwise. Callers must not tell
            an unknown identifier apart from a wrong password.
        """
        user = UserService.get_user_by_identifier(db, identifier)
        if user is None:
            verify_password(password, _DUMMY_HASH)
            return None
        if not verify_password(password, user.password_hash):
            return None
        if not user.is_active:
            logger.info(f"Login refused for inactive user: {user.username}")
            return None
        return user

    @staticmethod
    def ensure_admin(db: Session) -> User:
        """Create the bootstrap admin account if it does not exist"""
        admin = UserService.get_user_by_username(db, settings.ADMIN_USERNAME)
        if admin:
            return admin

        return UserService.create_user(
            db,
            UserCreate(
                username=settings.ADMIN_USERNAME,
                email=settings.ADMIN_EMAIL,
                full_name="Administrator",
                password=settings.ADMIN_PASSWORD,
                role=UserRole.ADMIN,
            ),
        )


# Singleton instance
user_service = UserService()
