import logging
import time
from typing import Optional

from sqlalchemy import select, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from database import Store
from models import User, Farm, Listing, Transaction, Message, ROLES
from errors import (
    DuplicateEmail, InvalidRole, InvalidAttributes, InvalidCredentials,
    UserNotFound, HasDependents,
)
from utils import hash_password, verify_password, sign_token, read_token

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def load_user(db: Session, user_id: int, error=UserNotFound) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise error(f"user {user_id} not found")
    return user


class IdentityStore:
    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings

    def register_user(self, email: str, name: Optional[str], raw_password: str, role: str) -> User:
        email = normalize_email(email)
        if role not in ROLES:
            raise InvalidRole(f"role must be one of {', '.join(ROLES)}")
        if not email or "@" not in email:
            raise InvalidAttributes("a valid email is required")
        if not raw_password:
            raise InvalidAttributes("password must not be empty")
        password_hash = hash_password(raw_password)

        def work(db: Session) -> User:
            if db.scalar(select(User.id).where(User.email == email)) is not None:
                raise DuplicateEmail("email already registered")
            user = User(email=email, name=name, password_hash=password_hash, role=role)
            db.add(user)
            try:
                db.flush()
            except IntegrityError as exc:
                raise DuplicateEmail("email already registered") from exc
            return user

        user = self.store.run(work)
        logger.info("registered user %s (%s)", user.id, user.role)
        return user

    def verify_credentials(self, email: str, raw_password: str) -> User:
        email = normalize_email(email)
        user = self.store.read(lambda db: db.scalar(select(User).where(User.email == email)))
        if user is None or not verify_password(raw_password, user.password_hash):
            raise InvalidCredentials("invalid email or password")
        return user

    def issue_session(self, user: User) -> str:
        payload = {
            "uid": user.id,
            "role": user.role,
            "exp": int(time.time()) + self.settings.session_ttl_seconds,
        }
        return sign_token(self.settings.session_secret, payload)

    def read_session(self, token: str) -> dict:
        payload = read_token(self.settings.session_secret, token or "")
        if payload is None:
            raise InvalidCredentials("invalid or expired session")
        return payload

    def get_user(self, user_id: int) -> User:
        return self.store.read(lambda db: load_user(db, user_id))

    def delete_user(self, user_id: int) -> None:
        def work(db: Session):
            user = load_user(db, user_id)
            dependents = (
                exists().where(Farm.owner_id == user_id),
                exists().where(Listing.seller_id == user_id),
                exists().where(Transaction.buyer_id == user_id),
                exists().where((Message.sender_id == user_id) | (Message.receiver_id == user_id)),
            )
            for clause in dependents:
                if db.scalar(select(clause)):
                    raise HasDependents(f"user {user_id} still has farms, listings, purchases or messages")
            db.delete(user)

        self.store.run(work)
        logger.info("deleted user %s", user_id)
