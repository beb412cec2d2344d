"""
Market Module

Markets are the tenancy scope for reporting: borrowers and loans belong to a
market and every dashboard figure can be filtered by one.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .exceptions import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord, parse_datetime


@dataclass
class Market(StorageRecord):
    """A trading market served by field agents"""
    name: str
    code: str
    region: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Market':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


class MarketRegistry:
    """Creates and looks up markets"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.markets_table = "markets"

    def register(self, name: str, code: str, region: Optional[str] = None,
                 address: Optional[str] = None) -> Market:
        if not name or not name.strip():
            raise ValidationError("Market name is required")
        if not code or not code.strip():
            raise ValidationError("Market code is required")
        code = code.strip().upper()
        if self.storage.find(self.markets_table, {"code": code}):
            raise ValidationError(f"Market code {code} is already in use")

        now = datetime.now(timezone.utc)
        market = Market(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            code=code,
            region=region,
            address=address
        )
        self.storage.save(self.markets_table, market.id, market.to_dict())
        return market

    def get(self, market_id: str) -> Market:
        data = self.storage.load(self.markets_table, market_id)
        if not data:
            raise NotFoundError(f"Market {market_id} not found")
        return Market.from_dict(data)

    def list(self, active_only: bool = True) -> List[Market]:
        markets = [Market.from_dict(data) for data in self.storage.load_all(self.markets_table)]
        if active_only:
            markets = [m for m in markets if m.is_active]
        return sorted(markets, key=lambda m: m.code)
