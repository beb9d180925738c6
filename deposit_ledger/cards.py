"""
Card Link Synchronization Module

Derives a linked payment card's operational status from its deposit
account's status. Synchronization is one-way (account -> card) and lazy:
it runs on every card read and persists the status only when it changed.

Card records live outside the ledger core; this module reads them and
writes back the synchronized status through a CardRecordStore.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from enum import Enum

from .accounts import AccountStatus, AccountStore
from .audit import AuditTrail, AuditEventType
from .storage import StorageInterface
from .logging_config import get_logger, log_action


class CardStatus(Enum):
    """Card operational states"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FROZEN = "FROZEN"


@dataclass(frozen=True)
class Card:
    """Payment card linked to a deposit account"""
    id: str
    account_id: str
    card_number: str
    status: CardStatus
    transaction_limit: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'card_number': self.card_number,
            'status': self.status.value,
            'transaction_limit': self.transaction_limit,
            'created_at': self.created_at.isoformat(),
            'updated_at': datetime.now(timezone.utc).isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Card':
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            card_number=data['card_number'],
            status=CardStatus(data['status'].upper()),
            transaction_limit=int(data['transaction_limit']),
            created_at=datetime.fromisoformat(data['created_at'])
        )


class CardRecordStore(ABC):
    """Wherever card records live"""

    @abstractmethod
    def get_by_account(self, account_id: str) -> Optional[Card]:
        """Card linked to the account, if any"""
        pass

    @abstractmethod
    def update_status(self, card_id: str, status: CardStatus) -> None:
        """Persist a new status for the card"""
        pass


class StorageCardStore(CardRecordStore):
    """Card records kept in the shared storage backend"""

    def __init__(self, storage: StorageInterface, table_name: str = "cards"):
        self.storage = storage
        self.table_name = table_name

    def save(self, card: Card) -> Card:
        self.storage.save(self.table_name, card.id, card.to_dict())
        return card

    def get_by_account(self, account_id: str) -> Optional[Card]:
        records = self.storage.find(self.table_name, {"account_id": account_id})
        if records:
            return Card.from_dict(records[0])
        return None

    def update_status(self, card_id: str, status: CardStatus) -> None:
        with self.storage.atomic():
            data = self.storage.load(self.table_name, card_id)
            if not data:
                raise KeyError(f"Card {card_id} not found")
            data['status'] = status.value
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.table_name, card_id, data)


def derive_card_status(account_status: AccountStatus, card_status: CardStatus) -> CardStatus:
    """
    Card status implied by the linked account's status.

    Frozen accounts force the card Frozen, Closed accounts force it
    Inactive; an Active account leaves the card's own status alone.
    """
    if account_status == AccountStatus.FROZEN:
        return CardStatus.FROZEN
    if account_status == AccountStatus.CLOSED:
        return CardStatus.INACTIVE
    return card_status


class CardLinkSynchronizer:
    """
    Keeps linked cards consistent with their account's lifecycle status
    """

    def __init__(
        self,
        account_store: AccountStore,
        card_store: CardRecordStore,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.account_store = account_store
        self.card_store = card_store
        self.audit_trail = audit_trail
        self.logger = get_logger("deposit_ledger.cards")

    def read_card(self, account_id: str) -> Optional[Card]:
        """Read the account's card, synchronizing its status first"""
        card = self.card_store.get_by_account(account_id)
        if card is None:
            return None
        return self.synchronize(card)

    def synchronize(self, card: Card) -> Card:
        """
        Apply the account -> card status rule, persisting the card status
        before returning when it changed
        """
        account = self.account_store.get_by_id(card.account_id)
        target = derive_card_status(account.status, card.status)
        if target == card.status:
            return card

        if self.audit_trail:
            with self.audit_trail.storage.atomic():
                self.card_store.update_status(card.id, target)
                self.audit_trail.log_event(
                    event_type=AuditEventType.CARD_STATUS_SYNCHRONIZED,
                    entity_type="card",
                    entity_id=card.id,
                    metadata={
                        "account_id": account.id,
                        "account_status": account.status,
                        "old_status": card.status,
                        "new_status": target
                    },
                    user_id=account.owner_id
                )
        else:
            self.card_store.update_status(card.id, target)
        log_action(
            self.logger, "info",
            f"Card {card.id} status {card.status.value} -> {target.value} "
            f"(account {account.id} is {account.status.value})",
            user_id=account.owner_id, action="sync_card_status", resource=f"card:{card.id}"
        )
        return replace(card, status=target)
