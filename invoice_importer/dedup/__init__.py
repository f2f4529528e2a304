"""Dedup package: item signatures and invoice reconciliation."""

from .reconciler import Reconciler  # noqa: F401
from .signature import compute_signature, is_fee_like  # noqa: F401
