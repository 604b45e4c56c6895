"""
Purchase status resolution from payment figures.
"""

import pytest

from backoffice.errors import InconsistentStatus, InvalidInput, PaymentIncomplete
from backoffice.services.purchase_service import (
    STATUS_COMPLETED,
    STATUS_PARTIAL,
    STATUS_PENDING,
    normalize_status,
    resolve_purchase_status,
)


class TestResolvePurchaseStatus:
    @pytest.mark.parametrize("requested,paid,due,expected", [
        # Derived from the figures
        (None, 0, 100, STATUS_PENDING),
        (None, 40, 60, STATUS_PARTIAL),
        (None, 100, 0, STATUS_COMPLETED),
        (None, 0, 0, STATUS_COMPLETED),
        # Explicit requests
        ("COMPLETED", 100, 0, STATUS_COMPLETED),
        ("PENDING", 0, 100, STATUS_PENDING),
        ("PENDING", 0, 0, STATUS_COMPLETED),
        ("PARTIAL", 40, 60, STATUS_PARTIAL),
        ("PARTIAL", 0, 100, STATUS_PENDING),
        ("PARTIAL", 100, 0, STATUS_COMPLETED),
        ("partial", 40, 60, STATUS_PARTIAL),
        ("", 40, 60, STATUS_PARTIAL),
    ])
    def test_table(self, requested, paid, due, expected):
        assert resolve_purchase_status(requested, paid, due) == expected

    def test_completed_with_amount_due(self):
        with pytest.raises(PaymentIncomplete):
            resolve_purchase_status("COMPLETED", 40, 60)

    def test_pending_with_payment(self):
        with pytest.raises(InconsistentStatus):
            resolve_purchase_status("PENDING", 40, 60)

    def test_completed_never_moves_back(self):
        with pytest.raises(InconsistentStatus):
            resolve_purchase_status(None, 40, 60, current=STATUS_COMPLETED)

    def test_cancelled_is_not_a_payment_status(self):
        with pytest.raises(InvalidInput):
            resolve_purchase_status("CANCELLED", 0, 100)


class TestNormalizeStatus:
    def test_unknown_status(self):
        with pytest.raises(InvalidInput):
            normalize_status("SHIPPED")

    def test_non_string(self):
        with pytest.raises(InvalidInput):
            normalize_status(3)

    def test_blank_is_none(self):
        assert normalize_status("  ") is None
        assert normalize_status(None) is None
