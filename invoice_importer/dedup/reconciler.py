"""Reconciler: appends only genuinely new candidate items to an invoice."""

from collections.abc import Callable, Iterable
from datetime import date
from decimal import Decimal

from invoice_importer.core.db import Invoice, InvoiceItem
from invoice_importer.core.errors import ItemProcessingError
from invoice_importer.core.models import ItemAdditionResult, ParsedInvoiceItem
from invoice_importer.core.utils import get_logger
from invoice_importer.dedup.signature import compute_signature, is_fee_like

logger = get_logger("invoice-importer.reconciler")

DEFAULT_INSTALLMENTS = 1


class Reconciler:
    """Decides which candidates of a batch are new to an invoice and appends them.

    Duplicates are detected by signature, both against the persisted items and within
    the batch itself, and then by a field-by-field comparison with the persisted items
    that relaxes installment matching for fee-like descriptions. The caller saves the
    invoice once the batch is done.
    """

    def __init__(
        self,
        is_fee_like: Callable[[str | None], bool] = is_fee_like,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Initialize the reconciler with the fee classifier and the clock for undated items."""
        self.is_fee_like = is_fee_like
        self.today = today

    def add_items(self, invoice: Invoice, candidates: Iterable[ParsedInvoiceItem]) -> ItemAdditionResult:
        """Append the new candidates to ``invoice`` and return how many were added or skipped."""
        candidates = list(candidates)
        if not candidates:
            logger.warning(f"No items to add to invoice {invoice.id}")
            return ItemAdditionResult()

        initial_count = len(invoice.items)
        seen = self.existing_signatures(invoice)
        added = skipped = 0
        for candidate in candidates:
            try:
                signature = self.candidate_signature(candidate)
                if signature in seen or self.is_already_in_invoice(invoice, candidate):
                    logger.debug(f"Skipped duplicate item: {candidate.description} ({candidate.amount})")
                    skipped += 1
                    continue
                invoice.add_item(self.create_item(candidate))
            except Exception as exc:
                error = ItemProcessingError(f"{candidate.description}: {exc}")
                logger.warning(f"Error adding item to invoice {invoice.id}: {error}")
                skipped += 1
                continue
            seen.add(signature)
            added += 1

        result = ItemAdditionResult(added=added, skipped=skipped)
        logger.info(
            f"Invoice {invoice.id} reconciled: added {result.added}, skipped {result.skipped}, "
            f"items {initial_count} -> {len(invoice.items)}"
        )
        return result

    def existing_signatures(self, invoice: Invoice) -> set[str]:
        """Signatures of the invoice's persisted items; items that cannot be signed are left out."""
        signatures = set()
        for item in invoice.items:
            try:
                signatures.add(
                    compute_signature(
                        item.description, item.amount, item.purchase_date, item.installments, item.total_installments
                    )
                )
            except Exception as exc:
                logger.debug(f"Failed to compute signature for existing item {item.id}: {exc}")
        return signatures

    def candidate_signature(self, candidate: ParsedInvoiceItem) -> str:
        """Sign a candidate with its date and installments resolved to their defaults."""
        return compute_signature(
            candidate.description,
            candidate.amount,
            self.resolve_date(candidate.purchase_date),
            self.resolve_installments(candidate.installments),
            self.resolve_installments(candidate.total_installments),
        )

    def is_already_in_invoice(self, invoice: Invoice, candidate: ParsedInvoiceItem) -> bool:
        """Return True when a persisted item has the candidate's fields."""
        return any(self.is_same_item(item, candidate) for item in invoice.items)

    def is_same_item(self, existing: InvoiceItem, candidate: ParsedInvoiceItem) -> bool:
        """Compare description, amount and date, and installments unless the item is fee-like."""
        if existing.description != candidate.description:
            return False
        if Decimal(existing.amount) != Decimal(candidate.amount):
            return False
        if existing.purchase_date != self.resolve_date(candidate.purchase_date):
            return False
        if self.is_fee_like(existing.description):
            return True
        return existing.installments == self.resolve_installments(
            candidate.installments
        ) and existing.total_installments == self.resolve_installments(candidate.total_installments)

    def create_item(self, candidate: ParsedInvoiceItem) -> InvoiceItem:
        """Build the persisted item for a candidate."""
        return InvoiceItem(
            description=candidate.description,
            amount=candidate.amount,
            purchase_date=self.resolve_date(candidate.purchase_date),
            installments=self.resolve_installments(candidate.installments),
            total_installments=self.resolve_installments(candidate.total_installments),
        )

    def resolve_date(self, purchase_date: date | None) -> date:
        """Default a missing purchase date to today."""
        return purchase_date if purchase_date is not None else self.today()

    def resolve_installments(self, installments: int | None) -> int:
        """Default a missing installment number to one."""
        return installments if installments is not None else DEFAULT_INSTALLMENTS
