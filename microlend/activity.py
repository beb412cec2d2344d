"""
Loan Activity Module

Hash-chained immutable activity log with SHA-256 for tamper detection.
Every loan lifecycle transition and every payment appends one record.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime, serialize_value


class LoanAction(Enum):
    """Actions recorded against a loan"""
    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    ACTIVATED = "activated"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    WRITTEN_OFF = "written_off"
    DELETED = "deleted"


@dataclass
class LoanActivity(StorageRecord):
    """
    Immutable activity record with hash chaining for tamper detection
    """
    loan_id: str
    user_id: Optional[str]
    action: LoanAction
    description: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    def __post_init__(self):
        self.metadata = serialize_value(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this record
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'loan_id': self.loan_id,
            'user_id': self.user_id,
            'action': self.action.value,
            'description': self.description,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanActivity':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['action'] = LoanAction(data['action'])
        return cls(**data)


class ActivityLog:
    """
    Append-only log of loan activities, one hash chain per loan

    Loan-scoped writes are serialized per loan, so each chain only ever
    grows from one writer at a time.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loan_activities"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _last_record(self, loan_id: str) -> Optional[Dict[str, Any]]:
        records = self.storage.find(self.table_name, {'loan_id': loan_id})
        if not records:
            return None
        return max(records, key=lambda r: r.get('sequence', 0))

    def record(
        self,
        loan_id: str,
        action: LoanAction,
        description: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LoanActivity:
        """
        Append an activity to the chain

        Written through the caller's storage, so an activity recorded inside
        an atomic unit of work disappears if that unit rolls back.

        Args:
            loan_id: Loan the activity belongs to
            action: What happened
            description: Human readable description
            user_id: Actor who performed the action
            metadata: Optional structured details

        Returns:
            Created LoanActivity
        """
        # Storage transaction first: SQLite serializes on its own lock
        with self.storage.atomic(), self._lock:
            # Re-read the tail: rollbacks may have removed earlier records
            last = self._last_record(loan_id)
            now = datetime.now(timezone.utc)

            activity = LoanActivity(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                user_id=user_id,
                action=action,
                description=description,
                previous_hash=last['current_hash'] if last else "",
                current_hash="",
                metadata=metadata or {},
                sequence=(last['sequence'] + 1) if last else 1
            )
            activity.current_hash = activity.calculate_hash()
            self.storage.save(self.table_name, activity.id, activity.to_dict())

            return activity

    def for_loan(self, loan_id: str) -> List[LoanActivity]:
        """Get all activities for a loan in the order they were recorded"""
        records = self.storage.find(self.table_name, {'loan_id': loan_id})
        activities = [LoanActivity.from_dict(data) for data in records]
        activities.sort(key=lambda a: a.sequence)
        return activities

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of every loan's activity chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_records': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        chains: Dict[str, List[LoanActivity]] = {}
        for data in self.storage.load_all(self.table_name):
            activity = LoanActivity.from_dict(data)
            chains.setdefault(activity.loan_id, []).append(activity)

        for loan_id, activities in chains.items():
            activities.sort(key=lambda a: a.sequence)
            result['total_records'] += len(activities)

            previous_hash = ""
            for position, activity in enumerate(activities):
                if not activity.verify_hash():
                    result['valid'] = False
                    result['hash_errors'].append({
                        'loan_id': loan_id,
                        'activity_id': activity.id,
                        'position': position
                    })
                if activity.previous_hash != previous_hash:
                    result['valid'] = False
                    result['chain_breaks'].append({
                        'loan_id': loan_id,
                        'activity_id': activity.id,
                        'position': position,
                        'expected_previous_hash': previous_hash,
                        'actual_previous_hash': activity.previous_hash
                    })
                previous_hash = activity.current_hash

        return result
