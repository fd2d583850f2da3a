from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable


@dataclass
class Bucket:
    count: int = 0
    total: float = 0
    name: str = ""


@dataclass
class PaymentStats:
    total_revenue: float = 0
    confirmed_payments: int = 0
    pending_payments: int = 0
    rejected_payments: int = 0
    by_method: dict[str, Bucket] = field(default_factory=dict)
    by_category: dict[str, Bucket] = field(default_factory=dict)

    def sorted_methods(self) -> list[dict]:
        return [
            {"id": key, "name": b.name, "count": b.count, "total": b.total}
            for key, b in sorted(self.by_method.items(), key=lambda kv: kv[1].total, reverse=True)
        ]

    def sorted_categories(self) -> list[dict]:
        return [
            {"name": key, "count": b.count, "total": b.total}
            for key, b in sorted(self.by_category.items(), key=lambda kv: kv[1].total, reverse=True)
        ]

    def to_dict(self) -> dict:
        return {
            "total_revenue": self.total_revenue,
            "confirmed_payments": self.confirmed_payments,
            "pending_payments": self.pending_payments,
            "rejected_payments": self.rejected_payments,
            "by_method": self.sorted_methods(),
            "by_category": self.sorted_categories(),
        }


def compute_payment_stats(registrations: Iterable, payment_methods: Iterable) -> PaymentStats:
    """Bucket payment counts and revenue over already-fetched rows.

    Revenue only counts confirmed payments. Rows without a status count as
    pending. Method buckets count every row that names a method but only
    total the confirmed ones.
    """
    names = {m.id: m.name for m in payment_methods}
    stats = PaymentStats()

    for reg in registrations:
        price = reg.price or 0
        category = reg.category or "Unknown"
        status = reg.payment_status or "pending"
        method_id = reg.payment_method_id

        if status == "confirmed":
            stats.confirmed_payments += 1
            stats.total_revenue += price
            bucket = stats.by_category.setdefault(category, Bucket(name=category))
            bucket.count += 1
            bucket.total += price
        elif status == "pending":
            stats.pending_payments += 1
        elif status == "rejected":
            stats.rejected_payments += 1

        if method_id:
            key = str(method_id)
            bucket = stats.by_method.setdefault(key, Bucket(name=names.get(method_id, "Unknown")))
            bucket.count += 1
            if status == "confirmed":
                bucket.total += price

    return stats


def compute_registration_stats(registrations: Iterable) -> dict:
    rows = list(registrations)
    claimed = sum(1 for r in rows if r.kit_claimed)
    total = len(rows)
    return {
        "total": total,
        "by_category": dict(Counter(r.category or "Unknown" for r in rows)),
        "by_shirt_size": dict(Counter(r.shirt_size or "Unknown" for r in rows)),
        "by_status": dict(Counter(r.status or "pending" for r in rows)),
        "kits_claimed": claimed,
        "kits_unclaimed": total - claimed,
        "claim_rate": round(claimed / total, 4) if total else 0.0,
    }
