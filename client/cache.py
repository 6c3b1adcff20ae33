"""
Bounded cache of decrypted message content.

One cache belongs to one signed-in session. It still remembers which user it
is serving and empties itself if a different user id shows up, because
ciphertext strings alone do not identify who decrypted them.
"""

from collections import OrderedDict
from typing import Optional


PLAINTEXT_CACHE_SIZE = 500


class PlaintextCache:
    """FIFO cache of ``(user_id, ciphertext) -> plaintext``"""

    def __init__(self, max_entries: int = PLAINTEXT_CACHE_SIZE):
        self.max_entries = max_entries
        self.active_user_id: Optional[str] = None
        self._entries: "OrderedDict[str, str]" = OrderedDict()

    @staticmethod
    def cache_key(user_id: str, ciphertext: str) -> str:
        return f"{user_id}:{ciphertext}"

    def _activate(self, user_id: str):
        if self.active_user_id != user_id:
            self._entries.clear()
            self.active_user_id = user_id

    def get(self, user_id: str, ciphertext: str) -> Optional[str]:
        """
        Look up previously decrypted content.

        Args:
            user_id: Reading user
            ciphertext: base64 content ciphertext

        Returns:
            Plaintext or None
        """
        self._activate(user_id)
        return self._entries.get(self.cache_key(user_id, ciphertext))

    def put(self, user_id: str, ciphertext: str, plaintext: str):
        """
        Remember decrypted content, evicting the oldest entry when full.

        Args:
            user_id: Reading user
            ciphertext: base64 content ciphertext
            plaintext: Decrypted content
        """
        self._activate(user_id)
        key = self.cache_key(user_id, ciphertext)

        # Re-insert so a refreshed entry counts as newest
        self._entries.pop(key, None)
        self._entries[key] = plaintext

        if len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self):
        self._entries.clear()
        self.active_user_id = None

    def __len__(self) -> int:
        return len(self._entries)
