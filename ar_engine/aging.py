"""
Aging Classifier Module

Buckets outstanding charge-line amounts into age windows relative to an
explicit as-of time. Pure: the same lines and as-of always give the same buckets.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable

from .exceptions import DataIntegrityError
from .ledger import ChargeLine
from .money import Money, Currency


class AgingBucket(Enum):
    """Age windows measured in days since service date"""
    CURRENT = "0_30"          # 0-30 days
    DAYS_31_60 = "31_60"      # 31-60 days
    DAYS_61_90 = "61_90"      # 61-90 days
    DAYS_91_PLUS = "91_plus"  # 91+ days

    @property
    def weight(self) -> int:
        """Priority weighting; older money weighs more"""
        return {
            AgingBucket.CURRENT: 1,
            AgingBucket.DAYS_31_60: 2,
            AgingBucket.DAYS_61_90: 3,
            AgingBucket.DAYS_91_PLUS: 4
        }[self]


def bucket_for_days(days: int) -> AgingBucket:
    """Determine aging bucket for a number of days since service"""
    if days <= 30:
        return AgingBucket.CURRENT
    elif days <= 60:
        return AgingBucket.DAYS_31_60
    elif days <= 90:
        return AgingBucket.DAYS_61_90
    else:
        return AgingBucket.DAYS_91_PLUS


@dataclass(frozen=True)
class AgingBuckets:
    """Outstanding balance split across the four aging buckets"""
    current: Money
    days_31_60: Money
    days_61_90: Money
    days_91_plus: Money

    @classmethod
    def empty(cls, currency: Currency) -> 'AgingBuckets':
        zero = Money.zero(currency)
        return cls(zero, zero, zero, zero)

    @property
    def currency(self) -> Currency:
        return self.current.currency

    def get(self, bucket: AgingBucket) -> Money:
        return {
            AgingBucket.CURRENT: self.current,
            AgingBucket.DAYS_31_60: self.days_31_60,
            AgingBucket.DAYS_61_90: self.days_61_90,
            AgingBucket.DAYS_91_PLUS: self.days_91_plus
        }[bucket]

    def total(self) -> Money:
        return self.current + self.days_31_60 + self.days_61_90 + self.days_91_plus

    def has_past_due(self) -> bool:
        """Any outstanding amount beyond the 0-30 window"""
        return (self.days_31_60.is_positive() or self.days_61_90.is_positive()
                or self.days_91_plus.is_positive())

    def weighted_exposure(self) -> Money:
        """Sum of bucket amounts multiplied by bucket weight"""
        total = Money.zero(self.currency)
        for bucket in AgingBucket:
            total = total + self.get(bucket) * bucket.weight
        return total

    def to_dict(self) -> Dict[str, int]:
        return {bucket.value: self.get(bucket).minor for bucket in AgingBucket}

    @classmethod
    def from_dict(cls, data: Dict[str, int], currency: Currency) -> 'AgingBuckets':
        return cls(*(Money(int(data.get(bucket.value, 0)), currency) for bucket in AgingBucket))


def classify(lines: Iterable[ChargeLine], as_of: datetime, currency: Currency) -> AgingBuckets:
    """
    Classify charge lines into aging buckets

    Args:
        lines: Charge lines for one account
        as_of: Reference time; days are counted from service date to as_of's date
        currency: Account currency

    Returns:
        AgingBuckets whose total equals the sum of positive outstanding amounts
    """
    totals = {bucket: 0 for bucket in AgingBucket}
    as_of_date = as_of.date()

    for line in lines:
        if line.outstanding.currency != currency:
            raise ValueError(
                f"Charge line {line.id} is in {line.outstanding.currency.code}, account is {currency.code}"
            )
        if line.outstanding.minor <= 0:
            continue
        # Future-dated services are current
        days = max((as_of_date - line.service_date).days, 0)
        totals[bucket_for_days(days)] += line.outstanding.minor

    return AgingBuckets(*(Money(totals[bucket], currency) for bucket in AgingBucket))


def verify_against_balance(buckets: AgingBuckets, balance: Money, tolerance_minor: int,
                           account_id: str) -> None:
    """Raise DataIntegrityError when buckets do not sum to the ledger balance"""
    difference = abs((buckets.total() - balance).minor)
    if difference > tolerance_minor:
        raise DataIntegrityError(
            f"Aging buckets total {buckets.total().to_string()} but balance is "
            f"{balance.to_string()} for account {account_id}",
            account_id=account_id
        )
