from __future__ import annotations

import json
import uuid
from datetime import date, datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storefront.logging import get_logger
from storefront.storage.errors import ConstraintViolation
from storefront.storage.models import Cart, Gender, Role, User

# Unique constraint name -> registration field it protects
_UNIQUE_FIELDS = {
    "app_user_email_key": "email",
    "app_user_phone_number_key": "phone_number",
    "cart_user_id_key": "user_id",
}


class PostgresStore:
    """Postgres-backed user, credential and cart store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    gender TEXT,
                    phone_number TEXT,
                    date_of_birth DATE,
                    role TEXT NOT NULL DEFAULT 'CUSTOMER',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT app_user_email_key UNIQUE (email),
                    CONSTRAINT app_user_phone_number_key UNIQUE (phone_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_auth_credential (
                    user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
                    password_hash TEXT NOT NULL,
                    password_algo TEXT NOT NULL,
                    last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cart (
                    id UUID PRIMARY KEY,
                    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                    items JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT cart_user_id_key UNIQUE (user_id)
                )
                """
            )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            gender=Gender(row["gender"]) if row.get("gender") else None,
            phone_number=row.get("phone_number"),
            date_of_birth=row.get("date_of_birth"),
            role=Role(row.get("role") or Role.CUSTOMER.value),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None)
        field = _UNIQUE_FIELDS.get(constraint or "", "email")
        label = field.replace("_", " ")
        return ConstraintViolation(f"{label} already exists", {"field": field})

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, gender, phone_number, date_of_birth, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        gender.value if gender else None,
                        phone_number,
                        date_of_birth,
                        role.value,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, role: Optional[Role] = None, limit: int = 100) -> List[User]:
        query = "SELECT * FROM app_user"
        params: list = []
        if role:
            query += " WHERE role = %s"
            params.append(role.value)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role.value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            deleted = cur.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # carts
    def create_cart(self, user_id: str) -> Cart:
        cart = Cart.new(user_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO cart (id, user_id, items, created_at) VALUES (%s, %s, %s, %s)",
                    (cart.id, user_id, json.dumps(cart.items), cart.created_at),
                )
        except errors.UniqueViolation as exc:
            raise self._unique_violation(exc) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for cart", {"user_id": user_id}
            ) from exc
        return cart

    def get_cart_by_user(self, user_id: str) -> Optional[Cart]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM cart WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        items = row.get("items") or []
        if isinstance(items, str):
            items = json.loads(items)
        return Cart(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            items=items,
            created_at=row.get("created_at") or datetime.utcnow(),
        )
