"""
Loan Event Log Module

Append-only history of lifecycle actions attached to a loan. Each loan's
events form a SHA-256 hash chain so that edits to stored history are
detectable.
"""

import hashlib
import json
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class LoanEventType(Enum):
    """Types of loan events"""
    DISBURSE = "disburse"
    TOP_UP = "top_up"
    RESTRUCTURE = "restructure"
    SKIP_INSTALLMENT = "skip_installment"
    MANUAL_PAYMENT = "manual_payment"
    NOTE = "note"


@dataclass
class LoanEvent(StorageRecord):
    """
    Immutable loan event chained to the loan's previous event
    """
    loan_id: str
    sequence: int  # 1-based position in the loan's history
    event_type: LoanEventType
    effective_date: date
    previous_hash: str
    current_hash: str
    amount_delta: Optional[Decimal] = None
    new_installment_amount: Optional[Decimal] = None
    new_duration_months: Optional[int] = None
    affected_installment_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash and updated_at
        """
        hash_data = self.to_dict()
        del hash_data['current_hash']
        del hash_data['updated_at']

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanEvent':
        """Create LoanEvent from dictionary with proper type restoration"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = LoanEventType(data['event_type'])
        data['effective_date'] = date.fromisoformat(data['effective_date'])
        for field in ('amount_delta', 'new_installment_amount'):
            if data.get(field) is not None:
                data[field] = Decimal(data[field])
        return cls(**data)


class LoanEventLog:
    """
    Per-loan hash-chained event history.

    Writes go through the caller's storage transaction, so an event is
    committed together with the ledger change it describes.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loan_events"):
        self.storage = storage
        self.table_name = table_name

    def _events(self, loan_id: str) -> List[LoanEvent]:
        events = [
            LoanEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {'loan_id': loan_id})
        ]
        events.sort(key=lambda event: event.sequence)
        return events

    def append(
        self,
        loan_id: str,
        event_type: LoanEventType,
        effective_date: date,
        amount_delta: Optional[Decimal] = None,
        new_installment_amount: Optional[Decimal] = None,
        new_duration_months: Optional[int] = None,
        affected_installment_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> LoanEvent:
        """
        Append an event to a loan's history

        Args:
            loan_id: Loan the event belongs to
            event_type: Type of loan event
            effective_date: Business date the action takes effect
            amount_delta: Money moved by the action (payment, top-up)
            new_installment_amount: Installment amount after a restructure
            new_duration_months: Duration after a restructure
            affected_installment_id: Installment the action targeted
            notes: Free-text notes
            created_by: ID of user who initiated the action

        Returns:
            Created LoanEvent
        """
        history = self._events(loan_id)
        previous = history[-1] if history else None
        now = datetime.now(timezone.utc)

        event = LoanEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            sequence=previous.sequence + 1 if previous else 1,
            event_type=event_type,
            effective_date=effective_date,
            previous_hash=previous.current_hash if previous else "",
            current_hash="",  # Calculated below
            amount_delta=amount_delta,
            new_installment_amount=new_installment_amount,
            new_duration_months=new_duration_months,
            affected_installment_id=affected_installment_id,
            notes=notes,
            created_by=created_by
        )
        event.current_hash = event.calculate_hash()

        self.storage.save(self.table_name, event.id, event.to_dict())
        return event

    def list_for_loan(self, loan_id: str, limit: Optional[int] = None) -> List[LoanEvent]:
        """Events of a loan, newest first"""
        events = list(reversed(self._events(loan_id)))
        if limit:
            events = events[:limit]
        return events

    def verify_integrity(self, loan_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one loan's history

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._events(loan_id)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def _purge_loan(self, loan_id: str) -> int:
        """Remove a loan's history; only for the loan cascade delete"""
        removed = 0
        for event in self._events(loan_id):
            if self.storage.delete(self.table_name, event.id):
                removed += 1
        return removed
