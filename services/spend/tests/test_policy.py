"""
Tests for the inclusion policy and delta computation.

These are pure functions: no database involved.
"""

from decimal import Decimal

import pytest
from conftest import make_event

from app.errors import DataIntegrityError, InclusionPolicyAmbiguous, InvalidAmount
from app.models import OrderFact, OrderStatus
from app.policy import (
    InclusionPolicy,
    compute_delta,
    parse_status,
    recompute_total,
    validate_amount,
)


class TestParseStatus:

    @pytest.mark.unit
    def test_known_statuses(self):
        assert parse_status("Delivered") is OrderStatus.DELIVERED
        assert parse_status("cancelled") is OrderStatus.CANCELLED
        assert parse_status(" SHIPPED ") is OrderStatus.SHIPPED

    @pytest.mark.unit
    def test_unknown_status_fails_loudly(self):
        with pytest.raises(InclusionPolicyAmbiguous) as exc:
            parse_status("Refunded")
        assert exc.value.status == "Refunded"

    @pytest.mark.unit
    def test_missing_status_is_ambiguous(self):
        with pytest.raises(InclusionPolicyAmbiguous):
            parse_status(None)


class TestValidateAmount:

    @pytest.mark.unit
    def test_accepts_two_fractional_digits(self):
        assert validate_amount(Decimal("19.99")) == Decimal("19.99")
        assert validate_amount(Decimal("0")) == Decimal("0")

    @pytest.mark.unit
    def test_rejects_negative(self):
        with pytest.raises(InvalidAmount):
            validate_amount(Decimal("-1.00"))

    @pytest.mark.unit
    def test_rejects_sub_cent_precision(self):
        with pytest.raises(InvalidAmount):
            validate_amount(Decimal("1.001"))

    @pytest.mark.unit
    def test_rejects_missing(self):
        with pytest.raises(InvalidAmount):
            validate_amount(None)


class TestComputeDelta:

    @pytest.mark.unit
    def test_insert_counted(self, policy):
        event = make_event(1, "Insert", new_amount="100.00", new_status="Delivered")
        assert compute_delta(event, policy) == Decimal("100.00")

    @pytest.mark.unit
    def test_insert_not_counted(self, policy):
        event = make_event(1, "Insert", new_amount="30.00", new_status="Cancelled")
        assert compute_delta(event, policy) == 0

    @pytest.mark.unit
    def test_update_delivered_to_cancelled_removes_amount(self, policy):
        event = make_event(
            2, "Update",
            old_amount="40.00", old_status="Delivered",
            new_amount="40.00", new_status="Cancelled",
        )
        assert compute_delta(event, policy) == Decimal("-40.00")

    @pytest.mark.unit
    def test_update_cancelled_to_pending_adds_amount(self, policy):
        event = make_event(
            2, "Update",
            old_amount="40.00", old_status="Cancelled",
            new_amount="45.00", new_status="Pending",
        )
        assert compute_delta(event, policy) == Decimal("45.00")

    @pytest.mark.unit
    def test_update_partial_refund(self, policy):
        event = make_event(
            2, "Update",
            old_amount="100.00", old_status="Delivered",
            new_amount="75.50", new_status="Delivered",
        )
        assert compute_delta(event, policy) == Decimal("-24.50")

    @pytest.mark.unit
    def test_delete_counted(self, policy):
        event = make_event(3, "Delete", old_amount="50.00", old_status="Shipped")
        assert compute_delta(event, policy) == Decimal("-50.00")

    @pytest.mark.unit
    def test_delete_not_counted(self, policy):
        event = make_event(3, "Delete", old_amount="50.00", old_status="Cancelled")
        assert compute_delta(event, policy) == 0

    @pytest.mark.unit
    def test_unknown_status_raises(self, policy):
        event = make_event(1, "Insert", new_amount="10.00", new_status="Refunded")
        with pytest.raises(InclusionPolicyAmbiguous):
            compute_delta(event, policy)

    @pytest.mark.unit
    def test_negative_amount_raises(self, policy):
        event = make_event(1, "Insert", new_amount="-10.00", new_status="Delivered")
        with pytest.raises(InvalidAmount):
            compute_delta(event, policy)

    @pytest.mark.unit
    def test_update_without_old_values_raises(self, policy):
        event = make_event(1, "Update", new_amount="10.00", new_status="Delivered")
        with pytest.raises(DataIntegrityError):
            compute_delta(event, policy)

    @pytest.mark.unit
    def test_custom_policy_counts_only_delivered(self):
        delivered_only = InclusionPolicy([OrderStatus.DELIVERED])
        event = make_event(1, "Insert", new_amount="10.00", new_status="Pending")
        assert compute_delta(event, delivered_only) == 0


class TestRecomputeTotal:

    @pytest.mark.unit
    def test_non_cancelled_orders_are_summed(self, policy):
        orders = [
            OrderFact(order_id="O1", customer_id="C", amount=Decimal("100.00"), status="Delivered"),
            OrderFact(order_id="O2", customer_id="C", amount=Decimal("50.00"), status="Delivered"),
            OrderFact(order_id="O3", customer_id="C", amount=Decimal("30.00"), status="Cancelled"),
        ]
        assert recompute_total(orders, policy) == Decimal("150.00")

    @pytest.mark.unit
    def test_no_orders_is_zero(self, policy):
        assert recompute_total([], policy) == Decimal("0.00")
