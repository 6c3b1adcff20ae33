"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for user accounts, published public keys, chat
membership and encrypted message records. The server never sees plaintext
of encrypted messages or any private key.
"""

import os
from datetime import datetime
from typing import Optional, List
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DATABASE_URL = os.environ.get("CHAT_DATABASE_URL", "sqlite+aiosqlite:///./chat.db")


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # base64 DER SPKI (RSA-OAEP)
    created_at = Column(DateTime, default=datetime.utcnow)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)


class Chat(Base):
    """A conversation between two or more users"""
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ChatMember(Base):
    """Membership of a user in a chat"""
    __tablename__ = "chat_members"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)


class Message(Base):
    """
    Stored message record.

    ``content`` is base64 ciphertext when ``encrypted_session_key`` and
    ``iv`` are set, plain text otherwise.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), index=True, nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    iv = Column(String(32), nullable=True)
    encrypted_session_key = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'chat_id': self.chat_id,
            'sender_id': str(self.sender_id),
            'ciphertext': self.content,
            'iv': self.iv,
            'encrypted_session_key': self.encrypted_session_key,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = DATABASE_URL):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password)
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """
        Get user by username.

        Args:
            username: Username to look up

        Returns:
            User object or None if not found
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_users(self, usernames: List[str]) -> List[User]:
        """Users matching the given usernames (unknown names are skipped)"""
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username.in_(usernames)))
            return list(result.scalars().all())

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Args:
            username: Username
            password: Password to verify

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def set_public_key(self, username: str, public_key: str) -> bool:
        """
        Store the user's published public key.

        Returns:
            False if the user does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if not user:
                return False

            user.public_key = public_key
            await session.commit()
            return True

    async def list_users(self) -> List[str]:
        """
        List all registered usernames.

        Returns:
            List of usernames
        """
        async with self.async_session() as session:
            result = await session.execute(select(User.username).where(User.is_active == True))
            return [row[0] for row in result.all()]

    async def create_chat(self, creator: User, members: List[User]) -> Chat:
        """
        Create a chat. The creator is always a member.

        Args:
            creator: User creating the chat
            members: Other participants

        Returns:
            Created Chat
        """
        member_ids = {creator.id} | {member.id for member in members}

        async with self.async_session() as session:
            chat = Chat(created_by=creator.id)
            session.add(chat)
            await session.flush()

            for user_id in sorted(member_ids):
                session.add(ChatMember(chat_id=chat.id, user_id=user_id))

            await session.commit()
            await session.refresh(chat)
            return chat

    async def list_chats(self, user: User) -> List[int]:
        """Ids of chats the user belongs to"""
        async with self.async_session() as session:
            result = await session.execute(
                select(ChatMember.chat_id).where(ChatMember.user_id == user.id).order_by(ChatMember.chat_id)
            )
            return [row[0] for row in result.all()]

    async def get_participants(self, chat_id: int) -> List[User]:
        """
        Get the members of a chat.

        Returns:
            List of users, empty if the chat does not exist
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(User)
                .join(ChatMember, ChatMember.user_id == User.id)
                .where(ChatMember.chat_id == chat_id)
                .order_by(User.id)
            )
            return list(result.scalars().all())

    async def add_message(
        self,
        chat_id: int,
        sender: User,
        content: str,
        iv: Optional[str],
        encrypted_session_key: Optional[str],
    ) -> Message:
        """
        Store a message record.

        Args:
            chat_id: Chat the message belongs to
            sender: Sending user
            content: Ciphertext (base64) or plain text
            iv: base64 nonce for encrypted messages
            encrypted_session_key: Packed wrapped keys for encrypted messages

        Returns:
            Stored Message
        """
        async with self.async_session() as session:
            message = Message(
                chat_id=chat_id,
                sender_id=sender.id,
                content=content,
                iv=iv,
                encrypted_session_key=encrypted_session_key
            )
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def get_messages(self, chat_id: int, limit: int = 50) -> List[Message]:
        """
        Get the most recent messages of a chat, oldest first.

        Args:
            chat_id: Chat id
            limit: Maximum number of messages

        Returns:
            List of messages
        """
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))
