"""
guest_house/users.py

In-memory user directory.

Users are looked up by id (browser binding) and by phone number (sign-in and
verification callbacks). One user per phone number: saving a second user for
the same number re-points the phone index to the newer record.
"""

import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import InvalidArgument


@dataclass
class User:
    user_id: str
    phone_number: str
    email: Optional[str] = None


def user_from_phone_number(phone_number: str, email: Optional[str] = None) -> User:
    """Create a new User with a fresh random id."""
    return User(user_id=str(uuid.uuid4()), phone_number=phone_number, email=email)


class UserStore:
    def __init__(self):
        self._users: Dict[str, User] = {}
        self._phone_index: Dict[str, str] = {}
        self._lock = threading.RLock()

    def save(self, user: Optional[User]) -> None:
        if user is None:
            raise InvalidArgument("cannot save a null user")

        with self._lock:
            self._users[user.user_id] = user
            self._phone_index[user.phone_number] = user.user_id

    def remove(self, user: Optional[User]) -> None:
        if user is None:
            raise InvalidArgument("cannot remove a null user")

        with self._lock:
            self._users.pop(user.user_id, None)
            # only drop the index entry if it still points at this user
            if self._phone_index.get(user.phone_number) == user.user_id:
                del self._phone_index[user.phone_number]

    def find_by_id(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        with self._lock:
            return self._users.get(user_id)

    def find_by_phone_number(self, phone_number: Optional[str]) -> Optional[User]:
        if not phone_number:
            return None
        with self._lock:
            user_id = self._phone_index.get(phone_number)
            return self._users.get(user_id) if user_id else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)
