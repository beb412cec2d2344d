"""
Borrower Module

Borrower registration and maintenance. Borrowers are never hard-deleted;
deactivation and soft removal keep their loan history intact.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import re
import uuid

from .exceptions import NotFoundError, ValidationError
from .logging_config import log_action
from .markets import MarketRegistry
from .storage import StorageInterface, StorageRecord, parse_datetime


logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^\+?[0-9]{7,15}$')
EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Fields a caller may change after registration
UPDATABLE_FIELDS = {
    'first_name', 'last_name', 'phone', 'email', 'home_address',
    'business_address', 'business_type', 'shop_number', 'market_id'
}


@dataclass
class Borrower(StorageRecord):
    """A registered borrower"""
    first_name: str
    last_name: str
    phone: str
    home_address: str
    market_id: str
    email: Optional[str] = None
    business_address: Optional[str] = None
    business_type: Optional[str] = None
    shop_number: Optional[str] = None
    registered_by: Optional[str] = None
    is_active: bool = True
    deleted_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def can_borrow(self) -> bool:
        return self.is_active and self.deleted_at is None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Borrower':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'deleted_at'):
            data[key] = parse_datetime(data.get(key))
        return cls(**data)


class BorrowerManager:
    """
    Manages borrower registration, updates and deactivation
    """

    def __init__(self, storage: StorageInterface, market_registry: MarketRegistry):
        self.storage = storage
        self.market_registry = market_registry
        self.borrowers_table = "borrowers"

    def register(
        self,
        first_name: str,
        last_name: str,
        phone: str,
        home_address: str,
        market_id: str,
        registered_by: Optional[str] = None,
        **details
    ) -> Borrower:
        """
        Register a new borrower

        Raises:
            ValidationError: Missing names/address, malformed or duplicate phone
            NotFoundError: Unknown market
        """
        unknown = set(details) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown borrower fields: {', '.join(sorted(unknown))}")

        self._validate(first_name=first_name, last_name=last_name, phone=phone,
                       home_address=home_address, email=details.get('email'))
        self.market_registry.get(market_id)
        self._ensure_phone_unique(phone)

        now = datetime.now(timezone.utc)
        borrower = Borrower(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=phone,
            home_address=home_address,
            market_id=market_id,
            registered_by=registered_by,
            **details
        )
        self.storage.save(self.borrowers_table, borrower.id, borrower.to_dict())

        log_action(logger, "info", f"Borrower {borrower.full_name} registered",
                   user_id=registered_by, action="borrower_registered", resource=borrower.id)
        return borrower

    def get(self, borrower_id: str, include_deleted: bool = False) -> Borrower:
        data = self.storage.load(self.borrowers_table, borrower_id)
        if not data:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        borrower = Borrower.from_dict(data)
        if borrower.deleted_at and not include_deleted:
            raise NotFoundError(f"Borrower {borrower_id} not found")
        return borrower

    def update(self, borrower_id: str, **changes) -> Borrower:
        """Update contact or business details"""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown borrower fields: {', '.join(sorted(unknown))}")

        borrower = self.get(borrower_id)
        merged = {**borrower.to_dict(), **changes}
        self._validate(first_name=merged['first_name'], last_name=merged['last_name'],
                       phone=merged['phone'], home_address=merged['home_address'],
                       email=merged.get('email'))
        if 'phone' in changes and changes['phone'] != borrower.phone:
            self._ensure_phone_unique(changes['phone'])
        if 'market_id' in changes:
            self.market_registry.get(changes['market_id'])

        for key, value in changes.items():
            setattr(borrower, key, value)
        borrower.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.borrowers_table, borrower.id, borrower.to_dict())
        return borrower

    def deactivate(self, borrower_id: str) -> Borrower:
        borrower = self.get(borrower_id)
        borrower.is_active = False
        borrower.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.borrowers_table, borrower.id, borrower.to_dict())
        return borrower

    def soft_delete(self, borrower_id: str) -> Borrower:
        borrower = self.get(borrower_id)
        borrower.deleted_at = datetime.now(timezone.utc)
        borrower.updated_at = borrower.deleted_at
        self.storage.save(self.borrowers_table, borrower.id, borrower.to_dict())
        return borrower

    def search(self, market_id: Optional[str] = None, text: Optional[str] = None) -> List[Borrower]:
        """Find borrowers by market and/or name/phone fragment"""
        filters = {"market_id": market_id} if market_id else {}
        borrowers = [Borrower.from_dict(d) for d in self.storage.find(self.borrowers_table, filters)]
        borrowers = [b for b in borrowers if b.deleted_at is None]
        if text:
            needle = text.lower()
            borrowers = [
                b for b in borrowers
                if needle in b.first_name.lower() or needle in b.last_name.lower() or needle in b.phone
            ]
        return sorted(borrowers, key=lambda b: (b.last_name, b.first_name))

    def _validate(self, first_name, last_name, phone, home_address, email=None) -> None:
        if not first_name or not first_name.strip():
            raise ValidationError("First name is required")
        if not last_name or not last_name.strip():
            raise ValidationError("Last name is required")
        if not home_address or not home_address.strip():
            raise ValidationError("Home address is required")
        if not phone or not PHONE_PATTERN.match(phone):
            raise ValidationError(f"Invalid phone number: {phone!r}")
        if email and not EMAIL_PATTERN.match(email):
            raise ValidationError(f"Invalid email address: {email!r}")

    def _ensure_phone_unique(self, phone: str) -> None:
        if self.storage.find(self.borrowers_table, {"phone": phone}):
            raise ValidationError(f"Phone number {phone} is already registered")
