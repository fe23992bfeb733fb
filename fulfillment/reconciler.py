"""
Staging -> internal order reconciliation.

Carrier records share no key with platform orders, so each staged record is
matched through a cascade of increasingly weak signals. The first rule that
yields a candidate wins:

1. Reference: the carrier reference equals an order number, allowing for
   the operation's prefix and a leading ``#``.
2. Phone: trailing nine digits of both numbers.
3. Email: case-insensitive exact match.
4. Name + city: both equal after case folding, accent stripping and
   whitespace collapsing.

Matched orders get the mapped status, the tracking number (when supplied)
and the provider payload summary. Unmatched records stay staged and are
retried on the next pass. Orders are never created here.
"""
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from fulfillment.config import config
from fulfillment.events import emit_orders_reconciled
from fulfillment.exceptions import ProviderDataError
from fulfillment.models import (
    AccountOperation,
    Order,
    ProviderOrder,
    StagingOrder,
    WarehouseAccount,
    utcnow,
)
from fulfillment.observability import get_logger, timed
from fulfillment.status_mapper import map_record_status

logger = get_logger(__name__)

PHONE_SUFFIX_DIGITS = 9
MIN_PHONE_DIGITS = 6

_EXTENSION_RE = re.compile(r"\s*(?:ext\.?|x|#)\s*\d+\s*$", re.IGNORECASE)
_NON_DIGITS_RE = re.compile(r"\D")


class MatchRule(str, Enum):
    """Cascade rules, strongest first."""
    REFERENCE = "reference"
    PHONE = "phone"
    EMAIL = "email"
    NAME_CITY = "name_city"


# ═══════════════════════════════════════════════════════════════════════════════
# NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════════════

def normalize_phone(value: Optional[str]) -> Optional[str]:
    """
    Trailing nine digits of a phone number, ignoring formatting.

    Extension suffixes (``ext 12``, ``x12``, ``#12``) are dropped first.
    Numbers with fewer than six digits are too short to identify anyone.

    >>> normalize_phone("+34 612-345-678")
    '612345678'
    """
    if not value:
        return None
    digits = _NON_DIGITS_RE.sub("", _EXTENSION_RE.sub("", str(value)))
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return digits[-PHONE_SUFFIX_DIGITS:]


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    email = str(value).strip().lower()
    return email if "@" in email else None


def normalize_text(value: Optional[str]) -> Optional[str]:
    """Lowercase, strip accents and collapse whitespace."""
    if not value:
        return None
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    text = " ".join(stripped.lower().split())
    return text or None


def _strip_prefix(reference: str, prefix: Optional[str]) -> str:
    if prefix and reference.upper().startswith(prefix.upper()):
        return reference[len(prefix):]
    return reference


def reference_candidates(reference: Optional[str], prefix: Optional[str] = None) -> List[str]:
    """
    Order numbers a carrier reference may correspond to.

    >>> reference_candidates("#ES-1001", "ES-")
    ['#ES-1001', 'ES-1001', '1001', '#1001']
    """
    if not reference or not reference.strip():
        return []
    ref = reference.strip()
    bare = ref.lstrip("#")
    core = _strip_prefix(bare, prefix)

    candidates = [ref, bare, f"#{bare}", core, f"#{core}"]
    if prefix:
        candidates.extend([f"{prefix}{core}", f"#{prefix}{core}"])

    seen = set()
    unique = []
    for candidate in candidates:
        if candidate and candidate != "#" and candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


def resolve_operations(
    reference: Optional[str], operations: Sequence[AccountOperation]
) -> List[AccountOperation]:
    """
    Operations a record may belong to.

    Operations whose prefix starts the reference win; otherwise the default
    operation; otherwise every linked operation.
    """
    bare = (reference or "").strip().lstrip("#").upper()
    if bare:
        by_prefix = [
            op for op in operations
            if op.reference_prefix and bare.startswith(op.reference_prefix.upper())
        ]
        if by_prefix:
            return by_prefix

    defaults = [op for op in operations if op.is_default]
    if defaults:
        return defaults
    return list(operations)


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""
    matched: List[Tuple[int, str]] = field(default_factory=list)  # (staging id, order id)
    unmatched: List[int] = field(default_factory=list)
    errors: int = 0
    by_rule: Dict[str, int] = field(default_factory=dict)

    @property
    def examined(self) -> int:
        return len(self.matched) + len(self.unmatched) + self.errors

    def to_dict(self) -> Dict[str, int]:
        return {
            "matched": len(self.matched),
            "unmatched": len(self.unmatched),
            "errors": self.errors,
            **{f"by_{rule}": count for rule, count in self.by_rule.items()},
        }


@dataclass
class Match:
    order: Order
    rule: MatchRule
    candidates: int = 1


# ═══════════════════════════════════════════════════════════════════════════════
# RECONCILER
# ═══════════════════════════════════════════════════════════════════════════════

class Reconciler:
    """Links staged provider records to internal orders for one account at a time."""

    def __init__(self, store, batch_size: Optional[int] = None):
        self.store = store
        self.batch_size = batch_size or config.sync.reconcile_batch_size

    @timed("reconcile_account", warn_threshold_ms=30000)
    async def reconcile_account(
        self,
        account: WarehouseAccount,
        external_ids: Optional[Iterable[str]] = None,
    ) -> ReconcileResult:
        """
        Reconcile unprocessed staging rows of an account.

        ``external_ids`` limits the pass to specific records (e.g. the ones
        just staged by one window); otherwise every unprocessed row is swept.
        """
        result = ReconcileResult()
        operations = await self.store.list_operations(account.id)
        if not operations:
            logger.warning(
                f"Account {account.id} has no linked operations; nothing can match",
                extra={"account_id": account.id},
            )

        ids = list(external_ids) if external_ids is not None else None
        last_id = 0
        while True:
            batch = await self.store.list_unprocessed(
                account.id, after_id=last_id, limit=self.batch_size, external_ids=ids
            )
            if not batch:
                break
            await self.reconcile_batch(account, operations, batch, result)
            last_id = batch[-1].id
            if len(batch) < self.batch_size:
                break

        if result.examined:
            logger.info(
                f"Reconciled account {account.id}: {len(result.matched)} matched, "
                f"{len(result.unmatched)} unmatched",
                extra={"account_id": account.id, **result.to_dict()},
            )
            await emit_orders_reconciled(
                account.id, len(result.matched), len(result.unmatched), errors=result.errors
            )
        return result

    async def reconcile_batch(
        self,
        account: WarehouseAccount,
        operations: Sequence[AccountOperation],
        batch: Sequence[StagingOrder],
        result: ReconcileResult,
    ) -> ReconcileResult:
        for staging in batch:
            try:
                record = staging.record()
            except ProviderDataError as e:
                result.errors += 1
                logger.warning(
                    f"Staging row {staging.id} has an undecodable payload: {e}",
                    extra={"account_id": account.id},
                )
                continue

            match = await self.match(record, resolve_operations(record.reference, operations))
            if match is None:
                result.unmatched.append(staging.id)
                logger.debug(
                    f"No order matches {account.provider.value} record {staging.external_order_id}",
                    extra={"account_id": account.id, "reference": record.reference},
                )
                continue

            await self.apply(account, staging, record, match.order)
            result.matched.append((staging.id, match.order.id))
            result.by_rule[match.rule.value] = result.by_rule.get(match.rule.value, 0) + 1

        return result

    async def match(
        self, record: ProviderOrder, operations: Sequence[AccountOperation]
    ) -> Optional[Match]:
        """Run the cascade; the first rule with any candidate wins."""
        if not operations:
            return None
        operation_ids = [op.operation_id for op in operations]

        references: List[str] = []
        for op in operations:
            for candidate in reference_candidates(record.reference, op.reference_prefix):
                if candidate not in references:
                    references.append(candidate)

        recipient = record.recipient
        phone = normalize_phone(recipient.phone)
        email = normalize_email(recipient.email)
        name = normalize_text(recipient.name)
        city = normalize_text(recipient.city)

        rules = (
            (MatchRule.REFERENCE, lambda: self.store.find_orders_by_reference(operation_ids, references)),
            (MatchRule.PHONE, lambda: self.store.find_orders_by_phone(operation_ids, phone)),
            (MatchRule.EMAIL, lambda: self.store.find_orders_by_email(operation_ids, email)),
            (MatchRule.NAME_CITY, lambda: self.store.find_orders_by_name_city(operation_ids, name, city)),
        )
        for rule, lookup in rules:
            candidates = await lookup()
            if not candidates:
                continue
            if len(candidates) > 1:
                logger.info(
                    f"{len(candidates)} orders match record {record.external_id} by {rule.value}; "
                    f"using {candidates[0].id}",
                    extra={"rule": rule.value, "candidates": [o.id for o in candidates[:10]]},
                )
            # Store returns unlinked orders first, then newest
            return Match(order=candidates[0], rule=rule, candidates=len(candidates))
        return None

    async def apply(
        self,
        account: WarehouseAccount,
        staging: StagingOrder,
        record: ProviderOrder,
        order: Order,
    ) -> None:
        """Write status, tracking and provider metadata, then mark the row processed."""
        status = map_record_status(record)
        entry = {
            "order_id": staging.external_order_id,
            "reference": record.reference,
            "status": record.status,
            "tracking": record.tracking_number,
            "value": record.value,
            "updated_at": utcnow().isoformat(),
        }
        await self.store.apply_carrier_update(
            order_id=order.id,
            account_id=account.id,
            carrier_order_id=staging.external_order_id,
            status=status,
            tracking_number=record.tracking_number,
            provider=record.provider.value,
            provider_entry=entry,
        )
        await self.store.mark_staging_processed(staging.id, order.id)
