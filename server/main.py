"""
FastAPI server for end-to-end encrypted chat application.

This server:
- Handles user registration and authentication
- Stores each user's published RSA public key
- Manages chats and their membership
- Stores encrypted message records (ciphertext, iv, wrapped session keys)
- Pushes new-message notifications to online participants via WebSocket

It never holds private keys and cannot read encrypted messages.
"""

import logging
from typing import Dict, List, Optional
from datetime import timedelta
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Depends
from pydantic import BaseModel
from contextlib import asynccontextmanager

from e2ee.primitives import is_valid_spki_public_key
from e2ee.session_keys import PayloadValidationError, validate_encryption_payload

from .database import Database, User
from .auth import create_access_token, verify_token, get_current_username, Token, ACCESS_TOKEN_EXPIRE_MINUTES


logger = logging.getLogger(__name__)


# Pydantic models for API
class UserRegister(BaseModel):
    username: str
    password: str


class UserLogin(BaseModel):
    username: str
    password: str


class PublicKeyUpdate(BaseModel):
    public_key: str


class ChatCreate(BaseModel):
    participants: List[str]


class MessageCreate(BaseModel):
    ciphertext: str
    iv: Optional[str] = None
    encrypted_session_key: Optional[str] = None


# WebSocket connection manager
class ConnectionManager:
    """Manages active WebSocket connections"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def disconnect(self, username: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(username, None)

    async def send_message(self, username: str, message: dict):
        """Push a JSON message to a connected user"""
        await self.active_connections[username].send_json(message)

    def is_online(self, username: str) -> bool:
        return username in self.active_connections

    def get_online_users(self) -> list[str]:
        """Get list of online users"""
        return list(self.active_connections.keys())


# Initialize database and connection manager
db = Database()
manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await db.create_tables()
    logger.info("Database initialized")
    yield
    logger.info("Server shutting down")


app = FastAPI(
    title="Encrypted Chat Server",
    description="End-to-end encrypted chat with hybrid RSA-OAEP / AES-GCM encryption",
    version="1.0.0",
    lifespan=lifespan
)


def _token_for(user: User) -> Token:
    access_token = create_access_token(
        data={"sub": user.username},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return Token(
        access_token=access_token,
        token_type="bearer",
        username=user.username,
        user_id=str(user.id)
    )


def _user_info(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "public_key": user.public_key
    }


async def _current_user(username: str = Depends(get_current_username)) -> User:
    user = await db.get_user(username)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


async def _chat_members(chat_id: int, user: User) -> List[User]:
    participants = await db.get_participants(chat_id)
    if not participants:
        raise HTTPException(status_code=404, detail="Chat not found")
    if user.id not in {p.id for p in participants}:
        raise HTTPException(status_code=403, detail="Not a member of this chat")
    return participants


@app.post("/api/register", response_model=Token)
async def register(user_data: UserRegister):
    """
    Register a new user account.

    The public key is published separately once the client has generated
    or migrated its key pair.
    """
    user = await db.create_user(username=user_data.username, password=user_data.password)

    if not user:
        raise HTTPException(status_code=400, detail="Username already exists")

    return _token_for(user)


@app.post("/api/login", response_model=Token)
async def login(user_data: UserLogin):
    """Authenticate a user and return JWT token"""
    user = await db.authenticate_user(user_data.username, user_data.password)

    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")

    return _token_for(user)


@app.get("/api/users/me")
async def get_me(user: User = Depends(_current_user)):
    """Current user's id, username and published public key"""
    return _user_info(user)


@app.put("/api/users/me/public_key")
async def update_public_key(update: PublicKeyUpdate, user: User = Depends(_current_user)):
    """
    Publish the current user's public key.

    Only base64 DER SubjectPublicKeyInfo RSA keys are accepted.
    """
    if not is_valid_spki_public_key(update.public_key):
        raise HTTPException(status_code=400, detail="Invalid public key")

    await db.set_public_key(user.username, update.public_key)
    return {"status": "success"}


@app.get("/api/users")
async def list_users():
    """List all registered users"""
    users = await db.list_users()
    return {"users": users}


@app.get("/api/users/online")
async def list_online_users():
    """List currently online users"""
    return {"users": manager.get_online_users()}


@app.post("/api/chats")
async def create_chat(chat_data: ChatCreate, user: User = Depends(_current_user)):
    """Create a chat with the given participants (the caller is added)"""
    names = set(chat_data.participants) - {user.username}
    members = await db.get_users(sorted(names))

    if len(members) != len(names):
        raise HTTPException(status_code=404, detail="Unknown participant")

    chat = await db.create_chat(user, members)
    participants = await db.get_participants(chat.id)
    return {"id": chat.id, "participants": [_user_info(p) for p in participants]}


@app.get("/api/chats")
async def list_chats(user: User = Depends(_current_user)):
    """Chats the current user belongs to"""
    return {"chats": await db.list_chats(user)}


@app.get("/api/chats/{chat_id}/participants")
async def get_participants(chat_id: int, user: User = Depends(_current_user)):
    """
    Participants of a chat with their published public keys.

    Senders wrap each message's session key for every key listed here.
    """
    participants = await _chat_members(chat_id, user)
    return {"participants": [_user_info(p) for p in participants]}


@app.post("/api/chats/{chat_id}/messages")
async def send_message(chat_id: int, message: MessageCreate, user: User = Depends(_current_user)):
    """
    Store a message.

    Encrypted messages must carry a wrapped session key for every
    participant and for nobody else.
    """
    participants = await _chat_members(chat_id, user)

    try:
        validate_encryption_payload(
            [str(p.id) for p in participants],
            message.ciphertext,
            message.encrypted_session_key,
            message.iv
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    stored = await db.add_message(
        chat_id=chat_id,
        sender=user,
        content=message.ciphertext,
        iv=message.iv,
        encrypted_session_key=message.encrypted_session_key
    )
    record = stored.to_dict()

    notification = {
        "type": "new_message",
        "from": user.username,
        "chat_id": chat_id,
        "message": record
    }
    for participant in participants:
        if participant.id == user.id or not manager.is_online(participant.username):
            continue
        # Record is already stored, delivery is best effort
        try:
            await manager.send_message(participant.username, notification)
        except Exception as e:
            logger.warning("Dropping connection for %s: %s", participant.username, type(e).__name__)
            manager.disconnect(participant.username)

    return record


@app.get("/api/chats/{chat_id}/messages")
async def get_messages(chat_id: int, limit: int = 50, user: User = Depends(_current_user)):
    """Most recent message records of a chat, oldest first"""
    await _chat_members(chat_id, user)
    messages = await db.get_messages(chat_id, limit=limit)
    return {"messages": [m.to_dict() for m in messages]}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for real-time notifications.

    Protocol:
    1. Client sends: {"type": "auth", "token": "jwt_token"}
    2. Server verifies and responds: {"type": "auth_success", "username": "..."}
    3. Server pushes: {"type": "new_message", "chat_id": ..., "message": {...}}
    4. Client may send {"type": "ping"} and receives {"type": "pong"}
    """
    username = None

    try:
        await websocket.accept()

        auth_data = await websocket.receive_json()

        if auth_data.get("type") != "auth":
            await websocket.send_json({"type": "error", "message": "Authentication required"})
            await websocket.close()
            return

        username = verify_token(auth_data.get("token", ""))

        if not username:
            await websocket.send_json({"type": "error", "message": "Invalid token"})
            await websocket.close()
            return

        manager.active_connections[username] = websocket
        await websocket.send_json({
            "type": "auth_success",
            "username": username,
            "online_users": manager.get_online_users()
        })

        while True:
            data = await websocket.receive_json()

            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Unsupported message type"})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning("WebSocket error: %s", type(e).__name__)
    finally:
        if username:
            manager.disconnect(username)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
