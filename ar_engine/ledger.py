"""
Ledger Reader Module

Read interface onto the billing subsystem: an account's current balance and its
outstanding charge lines. The engine never mutates charge lines; the write
helpers on StorageLedger stand in for the billing subsystem that owns them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterator, List

from .exceptions import ExternalReadError
from .money import Money, Currency
from .storage import StorageInterface


@dataclass(frozen=True)
class ChargeLine:
    """Outstanding amount for one service date on an account"""
    id: str
    account_id: str
    service_date: date
    outstanding: Money


@dataclass(frozen=True)
class LedgerBalance:
    """Billing-side balance snapshot for an account"""
    account_id: str
    balance: Money


class LedgerReader(ABC):
    """Read-only view of the billing store"""

    @abstractmethod
    def list_account_ids(self, offset: int, limit: int) -> List[str]:
        """One page of account ids in stable order"""
        pass

    @abstractmethod
    def get_balance(self, account_id: str) -> LedgerBalance:
        """Current balance; raises ExternalReadError if unavailable"""
        pass

    @abstractmethod
    def get_charge_lines(self, account_id: str) -> List[ChargeLine]:
        """All charge lines for an account, including fully paid ones"""
        pass

    def iter_account_ids(self, page_size: int) -> Iterator[str]:
        """Walk every page of account ids"""
        offset = 0
        while True:
            page = self.list_account_ids(offset, page_size)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size


class StorageLedger(LedgerReader):
    """
    Ledger backed by the billing tables of a StorageInterface
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "billing_accounts"
        self.lines_table = "charge_lines"

    def list_account_ids(self, offset: int, limit: int) -> List[str]:
        try:
            ids = sorted(record["id"] for record in self.storage.load_all(self.accounts_table))
        except Exception as e:
            raise ExternalReadError(f"Cannot enumerate billing accounts: {e}") from e
        return ids[offset:offset + limit]

    def get_balance(self, account_id: str) -> LedgerBalance:
        try:
            data = self.storage.load(self.accounts_table, account_id)
        except Exception as e:
            raise ExternalReadError(f"Cannot read balance for {account_id}: {e}") from e
        if not data:
            raise ExternalReadError(f"Billing account {account_id} not found")
        return LedgerBalance(
            account_id=account_id,
            balance=Money(int(data["balance_minor"]), Currency.from_code(data["currency"]))
        )

    def get_charge_lines(self, account_id: str) -> List[ChargeLine]:
        try:
            rows = self.storage.find(self.lines_table, {"account_id": account_id})
        except Exception as e:
            raise ExternalReadError(f"Cannot read charge lines for {account_id}: {e}") from e
        lines = [self._line_from_dict(row) for row in rows]
        lines.sort(key=lambda line: (line.service_date, line.id))
        return lines

    # Billing-side writes

    def open_account(self, account_id: str, currency: Currency = Currency.USD) -> None:
        """Create an empty billing account"""
        self.storage.save(self.accounts_table, account_id, {
            "id": account_id,
            "currency": currency.code,
            "balance_minor": 0
        })

    def post_charge(self, account_id: str, line_id: str, service_date: date, amount: Money) -> ChargeLine:
        """Add a charge line and raise the billing balance by its amount"""
        with self.storage.atomic():
            account = self._load_account(account_id)
            line = ChargeLine(id=line_id, account_id=account_id, service_date=service_date, outstanding=amount)
            self.storage.save(self.lines_table, line_id, self._line_to_dict(line))
            account["balance_minor"] += amount.minor
            self.storage.save(self.accounts_table, account_id, account)
        return line

    def apply_payment(self, account_id: str, amount: Money) -> Money:
        """
        Reduce outstanding charge lines oldest first and lower the balance

        Returns:
            Amount that could not be applied (account already at zero)
        """
        with self.storage.atomic():
            account = self._load_account(account_id)
            remaining = amount.minor
            for line in self.get_charge_lines(account_id):
                if remaining == 0:
                    break
                if line.outstanding.minor <= 0:
                    continue
                applied = min(remaining, line.outstanding.minor)
                remaining -= applied
                updated = ChargeLine(line.id, line.account_id, line.service_date,
                                     Money(line.outstanding.minor - applied, line.outstanding.currency))
                self.storage.save(self.lines_table, line.id, self._line_to_dict(updated))
            account["balance_minor"] -= amount.minor - remaining
            self.storage.save(self.accounts_table, account_id, account)
        return Money(remaining, amount.currency)

    def _load_account(self, account_id: str) -> Dict:
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise ValueError(f"Billing account {account_id} not found")
        return data

    @staticmethod
    def _line_to_dict(line: ChargeLine) -> Dict:
        return {
            "id": line.id,
            "account_id": line.account_id,
            "service_date": line.service_date.isoformat(),
            "outstanding_minor": line.outstanding.minor,
            "currency": line.outstanding.currency.code
        }

    @staticmethod
    def _line_from_dict(data: Dict) -> ChargeLine:
        return ChargeLine(
            id=data["id"],
            account_id=data["account_id"],
            service_date=date.fromisoformat(data["service_date"]),
            outstanding=Money(int(data["outstanding_minor"]), Currency.from_code(data["currency"]))
        )
