from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional


class Role(str, Enum):
    """Authorization role carried on users and in token claims."""

    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    CUSTOMER = "CUSTOMER"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    gender: Optional[Gender] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    role: Role = Role.CUSTOMER
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Registration:
    """Fields a new account is created from; the password is still plaintext."""

    email: str
    password: str
    first_name: str
    last_name: str
    gender: Optional[Gender] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None


@dataclass
class Cart:
    id: str
    user_id: str
    items: List[Dict] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, user_id: str) -> "Cart":
        return cls(id=str(uuid.uuid4()), user_id=user_id)
