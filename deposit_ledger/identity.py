"""
Identity Module

Authentication and owner resolution consumed by the ledger gateway.
Authenticator and IdentityResolver are the seams; CustomerDirectory is a
storage-backed implementation of both.
"""

import hashlib
import hmac
import re
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import OwnerNotFoundError, WeakPasswordError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


MIN_PASSWORD_LENGTH = 8


class CustomerStatus(Enum):
    """Customer states"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass(frozen=True)
class OwnerRecord:
    """Resolved account owner"""
    owner_id: str
    name: str
    status: CustomerStatus


class Authenticator(ABC):
    """Verifies an owner's credential"""

    @abstractmethod
    def verify(self, owner_id: str, credential: str) -> bool:
        pass


class IdentityResolver(ABC):
    """Translates an external identity into the internal owner id"""

    @abstractmethod
    def resolve_account_owner(self, owner_id: str) -> OwnerRecord:
        """
        Raises:
            OwnerNotFoundError: the identity is unknown
        """
        pass


@dataclass
class Customer(StorageRecord):
    """Registered customer with a salted password hash"""
    name: str
    email: str
    password_hash: str
    password_salt: str
    identification_no: Optional[str] = None
    status: CustomerStatus = CustomerStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['status'] = CustomerStatus(data['status'])
        return cls(**data)


def validate_password(password: str) -> None:
    """At least 8 characters with at least one letter and one digit"""
    if (
        not password
        or len(password) < MIN_PASSWORD_LENGTH
        or not re.search(r"[A-Za-z]", password)
        or not re.search(r"\d", password)
    ):
        raise WeakPasswordError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters "
            "and contain a letter and a digit"
        )


class CustomerDirectory(Authenticator, IdentityResolver):
    """
    Storage-backed customer registry

    Customers are looked up either by their generated id or by their
    identification number.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "customers"
        self.logger = get_logger("deposit_ledger.identity")

    def register(
        self,
        name: str,
        email: str,
        password: str,
        identification_no: Optional[str] = None
    ) -> Customer:
        """
        Register a new customer

        Raises:
            WeakPasswordError: password fails the password policy
            ValueError: name or email missing, or identification number taken
        """
        if not name or not name.strip():
            raise ValueError("Customer name is required")
        if not email or "@" not in email:
            raise ValueError(f"Invalid email address: {email!r}")
        validate_password(password)

        with self.storage.atomic():
            if identification_no and self.storage.find(
                self.table_name, {"identification_no": identification_no}
            ):
                raise ValueError(f"Identification number {identification_no} already registered")

            now = datetime.now(timezone.utc)
            salt = secrets.token_hex(16)
            customer = Customer(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name.strip(),
                email=email.strip(),
                password_hash=self._hash_password(password, salt),
                password_salt=salt,
                identification_no=identification_no
            )
            self.storage.save(self.table_name, customer.id, customer.to_dict())

        log_action(
            self.logger, "info", f"Customer registered: {customer.id}",
            user_id=customer.id, action="register_customer", resource=f"customer:{customer.id}"
        )
        return customer

    def get_customer(self, key: str) -> Optional[Customer]:
        """Find a customer by id or identification number"""
        if not key:
            return None
        data = self.storage.load(self.table_name, key)
        if data is None:
            matches = self.storage.find(self.table_name, {"identification_no": key})
            data = matches[0] if matches else None
        return Customer.from_dict(data) if data else None

    def verify(self, owner_id: str, credential: str) -> bool:
        customer = self.get_customer(owner_id)
        if customer is None or not customer.is_active:
            log_action(
                self.logger, "warning", "Login rejected: unknown or inactive customer",
                user_id=owner_id, action="verify_login"
            )
            return False

        expected = self._hash_password(credential or "", customer.password_salt)
        if not hmac.compare_digest(expected, customer.password_hash):
            log_action(
                self.logger, "warning", "Login rejected: wrong password",
                user_id=customer.id, action="verify_login"
            )
            return False
        return True

    def resolve_account_owner(self, owner_id: str) -> OwnerRecord:
        customer = self.get_customer(owner_id)
        if customer is None:
            raise OwnerNotFoundError(owner_id)
        return OwnerRecord(owner_id=customer.id, name=customer.name, status=customer.status)

    def set_status(self, customer_id: str, status: CustomerStatus) -> Customer:
        status = CustomerStatus(status)
        with self.storage.atomic():
            customer = self.get_customer(customer_id)
            if customer is None:
                raise OwnerNotFoundError(customer_id)
            customer.status = status
            customer.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, customer.id, customer.to_dict())

        log_action(
            self.logger, "info", f"Customer {customer.id} set to {status.value}",
            user_id=customer.id, action="set_customer_status", resource=f"customer:{customer.id}"
        )
        return customer

    def _hash_password(self, password: str, salt: str) -> str:
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()
