#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Device key bootstrap (generation, legacy migration, publishing)
- Hybrid-encrypted group messaging
- Real-time new-message notifications
"""

import asyncio
import json
import logging
import os
import sys
import getpass
from typing import Optional, Dict, List
from datetime import datetime
import websockets
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.cancellation import CancellationToken
from e2ee.primitives import CryptoError
from e2ee.reporting import ErrorReporter
from client.storage import KeyStore
from client.cache import PlaintextCache
from client.key_bootstrap import KeyLifecycleManager
from client.session import MessageSession


SERVER_URL = os.environ.get("CHAT_SERVER_URL", "http://localhost:8000")
STORAGE_DIR = os.environ.get("CHAT_STORAGE_DIR", "client_data")

HELP_TEXT = """Commands:
  /new <user> [<user> ...] - Create a chat with users
  /chats - List your chats
  /open <chat_id> - Open a chat and show recent messages
  /exit - Leave current chat
  /users - List all users
  /online - List online users
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(
        self,
        server_url: str = SERVER_URL,
        storage_dir: str = STORAGE_DIR,
        key_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the chat server
            storage_dir: Directory for the local key store
            key_size: RSA modulus length for newly generated key pairs
            transport: httpx transport override (e.g. ASGITransport)
        """
        self.server_url = server_url
        self.storage_dir = storage_dir
        self.key_size = key_size
        self.ws_url = server_url.replace("http", "ws", 1) + "/ws"
        self.username: Optional[str] = None
        self.user_id: Optional[str] = None
        self.token: Optional[str] = None
        self.key_store: Optional[KeyStore] = None
        self.session: Optional[MessageSession] = None
        self.key_manager: Optional[KeyLifecycleManager] = None
        self.reporter = ErrorReporter()
        self.websocket = None
        self.http_client = httpx.AsyncClient(base_url=server_url, transport=transport)
        self.running = False
        self.current_chat: Optional[int] = None
        self.view_token: Optional[CancellationToken] = None

    @property
    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new user account.

        Args:
            username: Desired username
            password: Password, also used to unlock the local key store

        Returns:
            True if successful
        """
        return await self._authenticate("/api/register", username, password)

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account.

        Args:
            username: Username
            password: Password

        Returns:
            True if successful
        """
        return await self._authenticate("/api/login", username, password)

    async def _authenticate(self, path: str, username: str, password: str) -> bool:
        try:
            response = await self.http_client.post(path, json={"username": username, "password": password})
        except httpx.HTTPError as e:
            print(f"Connection error: {e}")
            return False

        if response.status_code != 200:
            print(f"Failed: {response.json().get('detail', 'Unknown error')}")
            return False

        data = response.json()
        self.token = data["access_token"]
        self.username = username
        self.user_id = data["user_id"]

        if self.key_store:
            self.key_store.close()
        self.key_store = KeyStore(username, self.storage_dir)
        if not self.key_store.unlock(password):
            print("Failed to unlock local key store with this password")
            return False

        # New cache per sign-in
        self.session = MessageSession(self.user_id, self.key_store, PlaintextCache(), self.reporter)
        self.key_manager = KeyLifecycleManager(
            self.key_store, self._publish_public_key, reporter=self.reporter, key_size=self.key_size
        )

        await self.bootstrap_keys()
        print(f"Welcome, {username}")
        return True

    async def _publish_public_key(self, public_key: str):
        response = await self.http_client.put(
            "/api/users/me/public_key",
            json={"public_key": public_key},
            headers=self._auth_headers
        )
        response.raise_for_status()

    async def bootstrap_keys(self) -> bool:
        """
        Ensure this device has a key pair and the server has its public key.

        Returns:
            True if a usable key pair exists afterwards
        """
        try:
            response = await self.http_client.get("/api/users/me", headers=self._auth_headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            print(f"Could not check encryption keys: {e}")
            return False
        me = response.json()

        key_pair = await self.key_manager.ensure_keys(me["id"], me.get("public_key"))
        if key_pair is None:
            print("Warning: encryption keys are not available on this device")
            return False
        return True

    async def connect_websocket(self) -> bool:
        """Connect to WebSocket server"""
        try:
            self.websocket = await websockets.connect(self.ws_url)

            await self.websocket.send(json.dumps({
                "type": "auth",
                "token": self.token
            }))

            data = json.loads(await self.websocket.recv())

            if data.get("type") == "auth_success":
                print("Connected to server")
                print(f"Online users: {', '.join(data.get('online_users', []))}")
                return True

            print("Authentication failed")
            return False

        except (OSError, websockets.exceptions.WebSocketException) as e:
            print(f"WebSocket connection error: {e}")
            return False

    async def _participants(self, chat_id: int) -> List[dict]:
        response = await self.http_client.get(f"/api/chats/{chat_id}/participants", headers=self._auth_headers)
        response.raise_for_status()
        return response.json()["participants"]

    async def create_chat(self, usernames: List[str]):
        """Create a chat with the given users and open it"""
        response = await self.http_client.post(
            "/api/chats",
            json={"participants": usernames},
            headers=self._auth_headers
        )
        if response.status_code != 200:
            print(f"Failed to create chat: {response.json().get('detail', 'Unknown error')}")
            return
        chat = response.json()
        print(f"Created chat {chat['id']}")
        await self.open_chat(chat["id"])

    async def list_chats(self):
        response = await self.http_client.get("/api/chats", headers=self._auth_headers)
        if response.status_code != 200:
            print("Failed to list chats")
            return
        print("Chats:")
        for chat_id in response.json()["chats"]:
            print(f"  - {chat_id}")

    async def open_chat(self, chat_id: int):
        """
        Open a chat and show its recent history.

        Args:
            chat_id: Chat to open
        """
        if self.view_token:
            self.view_token.cancel()
        self.view_token = CancellationToken()
        token = self.view_token
        self.current_chat = chat_id

        try:
            response = await self.http_client.get(f"/api/chats/{chat_id}/messages", headers=self._auth_headers)
            if response.status_code != 200:
                print(f"Failed to open chat: {response.json().get('detail', 'Unknown error')}")
                self.current_chat = None
                return
            participants = {p["id"]: p["username"] for p in await self._participants(chat_id)}
        except httpx.HTTPError as e:
            print(f"Failed to open chat: {e}")
            self.current_chat = None
            return

        records = response.json()["messages"]
        results = await asyncio.gather(*(self.session.read(record, token) for record in records))

        if token.cancelled:
            return

        if records:
            print("\n--- Message History ---")
            for record, result in zip(records, results):
                self._print_message(participants.get(record["sender_id"], "?"), record, result.text)
            print("--- End History ---\n")

        print(f"Chat {chat_id}. Type '/exit' to leave chat, '/help' for commands.")

    def _print_message(self, sender: str, record: dict, text: str):
        prefix = "You" if sender == self.username else sender
        created = record.get("created_at")
        timestamp = datetime.fromisoformat(created).strftime("%H:%M") if created else "--:--"
        print(f"[{timestamp}] {prefix}: {text}")

    async def send_message(self, chat_id: int, text: str):
        """
        Encrypt and send a message to every participant of a chat.

        Args:
            chat_id: Target chat
            text: Message to send
        """
        try:
            participants = await self._participants(chat_id)
            missing = [p["username"] for p in participants if not p.get("public_key")]
            if missing:
                print(f"Cannot encrypt: no public key published for {', '.join(missing)}")
                return

            public_keys = {p["id"]: p["public_key"] for p in participants}
            payload = await self.session.compose(text, public_keys)

            response = await self.http_client.post(
                f"/api/chats/{chat_id}/messages",
                json=payload.to_dict(),
                headers=self._auth_headers
            )
            if response.status_code != 200:
                print(f"Failed to send message: {response.json().get('detail', 'Unknown error')}")

        except CryptoError as e:
            print(f"Failed to encrypt message: {type(e).__name__}")
        except httpx.HTTPError as e:
            print(f"Failed to send message: {e}")

    async def receive_messages(self):
        """Background task to receive notifications"""
        try:
            while self.running:
                data = json.loads(await self.websocket.recv())

                if data.get("type") == "new_message":
                    await self._handle_incoming_message(data)
                elif data.get("type") == "error":
                    print(f"\n[Error: {data.get('message')}]")

        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
            self.running = False

    async def _handle_incoming_message(self, data: dict):
        """Decrypt and display an incoming message"""
        sender = data.get("from")
        chat_id = data.get("chat_id")
        record = data.get("message")

        if not sender or not record:
            return

        result = await self.session.read(record)
        if chat_id == self.current_chat:
            self._print_message(sender, record, result.text)
        else:
            print(f"\n[New message in chat {chat_id} from {sender}]: {result.text}")

    async def list_users(self):
        """List all registered users"""
        response = await self.http_client.get("/api/users")
        if response.status_code == 200:
            print("Registered users:")
            for user in response.json()["users"]:
                print(f"  - {user}")

    async def list_online_users(self):
        """List currently online users"""
        response = await self.http_client.get("/api/users/online")
        if response.status_code == 200:
            print("Online users:")
            for user in response.json()["users"]:
                if user != self.username:
                    print(f"  - {user}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True

        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[chat {self.current_chat}] > " if self.current_chat else "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.current_chat:
                        await self.send_message(self.current_chat, user_input)
                    else:
                        print("No active chat. Use /open <chat_id> or /new <user>.")

                except httpx.HTTPError as e:
                    print(f"Request failed: {e}")
                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            if self.view_token:
                self.view_token.cancel()
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            await self.http_client.aclose()
            if self.key_store:
                self.key_store.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        if cmd == "/new" and len(parts) >= 2:
            await self.create_chat(parts[1:])
        elif cmd == "/open" and len(parts) == 2 and parts[1].isdigit():
            await self.open_chat(int(parts[1]))
        elif cmd == "/chats":
            await self.list_chats()
        elif cmd == "/exit":
            if self.view_token:
                self.view_token.cancel()
            self.current_chat = None
            print("Exited chat")
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/online":
            await self.list_online_users()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(level=logging.WARNING)
    client = ChatClient()

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.http_client.aclose()
            return
        else:
            print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()

    print("\nGoodbye!")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
