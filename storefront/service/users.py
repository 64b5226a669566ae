from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from storefront.logging import get_logger
from storefront.service.carts import CartService
from storefront.service.errors import (
    DuplicateRegistrationError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
)
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import Registration, Role, User

PASSWORD_ALGO = "argon2id"


class UserService:
    """Account and credential operations over a memory or Postgres store.

    Hashing runs in a worker thread so argon2 does not stall the event loop.
    """

    def __init__(
        self,
        store,
        carts: CartService,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.carts = carts
        self.logger = get_logger(__name__)
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _check_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHashError, VerificationError):
            return False

    async def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        self.store.save_password(user_id, pwd_hash, algo)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def get(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(self, *, role: Optional[Role] = None, limit: int = 100) -> List[User]:
        return self.store.list_users(role=role, limit=limit)

    async def verify_credentials(self, email: str, password: str) -> User:
        user = self.find_by_email(email)
        if not user:
            self.logger.info("credentials_unknown_email")
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(self._check_password, user.id, password):
            self.logger.info("credentials_password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("credentials_inactive_account", user_id=user.id)
            raise InvalidCredentialsError("account is disabled")
        return user

    async def create(self, registration: Registration, *, role: Role = Role.CUSTOMER) -> User:
        """Create the account, its credentials and its cart.

        The user row is written first; if storing the password or creating
        the cart fails the user is deleted again before the error is raised.
        """
        try:
            user = self.store.create_user(
                registration.email,
                registration.first_name,
                registration.last_name,
                gender=registration.gender,
                phone_number=registration.phone_number,
                date_of_birth=registration.date_of_birth,
                role=role,
            )
        except ConstraintViolation as exc:
            raise DuplicateRegistrationError(exc.detail.get("field", "email")) from exc

        stage = "credentials"
        try:
            await self.save_password(user.id, registration.password)
            stage = "cart"
            self.carts.create_cart(user.id)
        except Exception as exc:
            self.logger.error(
                "user_create_rolled_back",
                user_id=user.id,
                stage=stage,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.store.delete_user(user.id)
            if stage == "cart":
                raise ServerError(
                    "cannot create user due to failure in cart creation process"
                ) from exc
            raise ServerError("cannot create user") from exc

        self.logger.info("user_created", user_id=user.id, role=user.role.value)
        return user

    async def update_password(self, user_id: str, new_password: str) -> User:
        user = self.get(user_id)
        await self.save_password(user.id, new_password)
        self.logger.info("password_updated", user_id=user.id)
        return user
