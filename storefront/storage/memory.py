from __future__ import annotations

import json
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

from storefront.logging import get_logger
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import Cart, Gender, Role, User


class MemoryStore:
    """In-memory user, credential and cart store.

    Used for tests and local development. When ``fs_root`` is given the state
    is mirrored to ``<fs_root>/state/memory_store.json`` after every write and
    reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.carts: Dict[str, Cart] = {}
        # RLock so helpers can re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        gender: Optional[Gender] = None,
        phone_number: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        role: Role = Role.CUSTOMER,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if phone_number and any(
                existing.phone_number == phone_number for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "phone number already exists", {"field": "phone_number"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                gender=gender,
                phone_number=phone_number,
                date_of_birth=date_of_birth,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, role: Optional[Role] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if not role or u.role == role]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for cart_id, cart in list(self.carts.items()):
                if cart.user_id == user_id:
                    self.carts.pop(cart_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # carts
    def create_cart(self, user_id: str) -> Cart:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for cart", {"user_id": user_id})
            if any(cart.user_id == user_id for cart in self.carts.values()):
                raise ConstraintViolation("cart already exists", {"field": "user_id"})
            cart = Cart.new(user_id)
            self.carts[cart.id] = cart
            self._persist_state()
            return cart

    def get_cart_by_user(self, user_id: str) -> Optional[Cart]:
        with self._data_lock:
            return next((c for c in self.carts.values() if c.user_id == user_id), None)

    # persistence
    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "gender": user.gender.value if user.gender else None,
            "phone_number": user.phone_number,
            "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
            "role": user.role.value,
            "is_active": user.is_active,
            "created_at": user.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            gender=Gender(data["gender"]) if data.get("gender") else None,
            phone_number=data.get("phone_number"),
            date_of_birth=(
                date.fromisoformat(data["date_of_birth"])
                if data.get("date_of_birth")
                else None
            ),
            role=Role(data.get("role", Role.CUSTOMER.value)),
            is_active=data.get("is_active", True),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "carts": [
                {
                    "id": cart.id,
                    "user_id": cart.user_id,
                    "items": cart.items,
                    "created_at": cart.created_at.isoformat(),
                }
                for cart in self.carts.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.carts = {
            c["id"]: Cart(
                id=c["id"],
                user_id=c["user_id"],
                items=c.get("items", []),
                created_at=datetime.fromisoformat(c["created_at"]),
            )
            for c in data.get("carts", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
