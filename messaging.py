import logging
from typing import Iterator, List, Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.orm import Session

from config import Settings
from database import Store
from identity import load_user
from models import Message
from errors import SelfMessage, InvalidAttributes, MessageNotFound, NotReceiver

logger = logging.getLogger(__name__)


class Conversation:
    """Messages exchanged by two users, oldest first.

    Each iteration starts a new pass over the store and fetches in pages, so
    iterating again picks up messages sent in the meantime.
    """

    def __init__(self, store: Store, user_a: int, user_b: int, page_size: int = 50):
        self.store = store
        self.user_a = user_a
        self.user_b = user_b
        self.page_size = page_size

    def _page(self, after) -> List[Message]:
        pair = or_(
            and_(Message.sender_id == self.user_a, Message.receiver_id == self.user_b),
            and_(Message.sender_id == self.user_b, Message.receiver_id == self.user_a),
        )
        stmt = select(Message).where(pair)
        if after is not None:
            created_at, msg_id = after
            stmt = stmt.where(or_(
                Message.created_at > created_at,
                and_(Message.created_at == created_at, Message.id > msg_id),
            ))
        stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc()).limit(self.page_size)
        return self.store.read(lambda db: list(db.scalars(stmt).all()))

    def __iter__(self) -> Iterator[Message]:
        after = None
        while True:
            page = self._page(after)
            yield from page
            if len(page) < self.page_size:
                return
            last = page[-1]
            after = (last.created_at, last.id)


class MessagingLog:
    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings

    def send_message(self, sender_id: int, receiver_id: int, content: str) -> Message:
        if sender_id == receiver_id:
            raise SelfMessage("cannot send a message to yourself")
        if not content or not content.strip():
            raise InvalidAttributes("message content must not be empty")

        def work(db: Session) -> Message:
            load_user(db, sender_id)
            load_user(db, receiver_id)
            msg = Message(sender_id=sender_id, receiver_id=receiver_id, content=content, read=False)
            db.add(msg)
            db.flush()
            return msg

        msg = self.store.run(work)
        logger.debug("message %s from %s to %s", msg.id, sender_id, receiver_id)
        return msg

    def mark_read(self, message_id: int, requesting_user_id: int) -> Message:
        def work(db: Session) -> Message:
            msg = db.get(Message, message_id)
            if msg is None:
                raise MessageNotFound(f"message {message_id} not found")
            if msg.receiver_id != requesting_user_id:
                raise NotReceiver("only the receiver can mark a message as read")
            if not msg.read:
                msg.read = True
            return msg

        return self.store.run(work)

    def list_conversation(self, user_a: int, user_b: int, page_size: int = 50) -> Conversation:
        return Conversation(self.store, user_a, user_b, page_size=page_size)

    def inbox(self, user_id: int, unread_only: bool = False, limit: Optional[int] = None) -> List[Message]:
        stmt = select(Message).where(Message.receiver_id == user_id)
        if unread_only:
            stmt = stmt.where(Message.read.is_(False))
        stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        return self.store.read(lambda db: list(db.scalars(stmt).all()))

    def unread_count(self, user_id: int) -> int:
        stmt = select(func.count(Message.id)).where(Message.receiver_id == user_id, Message.read.is_(False))
        return self.store.read(lambda db: db.scalar(stmt) or 0)
