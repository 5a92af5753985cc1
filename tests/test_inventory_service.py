"""
Inventory ledger tests.

Verifies:
- Derived stock (IN + RETURN - OUT + signed ADJUSTMENT)
- Quantity validation and insufficient-stock rejection
- total_cost derivation on insert and update
- Valuation, low-stock detection and query helpers
- All-or-nothing bulk updates
"""

import random
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from posoffice.errors import (
    InsufficientStockError,
    InvalidOperationError,
    InvalidQuantityError,
    NotFoundError,
)
from posoffice.extensions import db
from posoffice.models import InventoryTransaction, movement_delta
from posoffice.services import inventory_service


# =============================================================================
# PURE FOLD
# =============================================================================


class TestComputeStock:

    def test_fold_without_database(self):
        movements = [
            SimpleNamespace(transaction_type="IN", quantity=10),
            SimpleNamespace(transaction_type="OUT", quantity=3),
            SimpleNamespace(transaction_type="RETURN", quantity=1),
            SimpleNamespace(transaction_type="ADJUSTMENT", quantity=2, adjustment_sign=-1),
            SimpleNamespace(transaction_type="ADJUSTMENT", quantity=5, adjustment_sign=1),
        ]
        assert inventory_service.compute_stock(movements) == 11

    def test_empty_fold_is_zero(self):
        assert inventory_service.compute_stock([]) == 0

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            movement_delta("TRANSFER", 1)


class TestStoredStock:

    def test_no_floor_on_read(self, db_session, product):
        db_session.add(InventoryTransaction(product_id=product.id, transaction_type="OUT", quantity=5))
        db_session.commit()

        assert inventory_service.get_current_stock(product.id) == -5
        assert inventory_service.get_stock_levels([product.id]) == {product.id: -5}

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_sql_aggregate_matches_fold(self, db_session, make_product, seed):
        rng = random.Random(seed)
        products = [make_product(), make_product()]

        rows = []
        for _ in range(40):
            tx_type = rng.choice(["IN", "OUT", "RETURN", "ADJUSTMENT"])
            rows.append(InventoryTransaction(
                product_id=rng.choice(products).id,
                transaction_type=tx_type,
                quantity=rng.randint(1, 20),
                adjustment_sign=rng.choice([1, -1]) if tx_type == "ADJUSTMENT" else 1,
            ))
        db_session.add_all(rows)
        db_session.commit()

        levels = inventory_service.get_stock_levels([p.id for p in products])
        for p in products:
            expected = inventory_service.compute_stock(r for r in rows if r.product_id == p.id)
            assert inventory_service.get_current_stock(p.id) == expected
            assert levels[p.id] == expected


# =============================================================================
# RECORDING MOVEMENTS
# =============================================================================


class TestRecordMovements:

    def test_stock_starts_at_zero(self, product):
        assert inventory_service.get_current_stock(product.id) == 0

    def test_in_out_return(self, product):
        inventory_service.record_stock_in(product.id, 100, Decimal("10.00"), "PO-1")
        inventory_service.record_stock_out(product.id, 30, Decimal("15.00"), "SALE-1")
        inventory_service.record_stock_return(product.id, 5, Decimal("10.00"), "RMA-1")

        assert inventory_service.get_current_stock(product.id) == 75

    def test_reference_types_default_by_movement(self, product):
        tx_in = inventory_service.record_stock_in(product.id, 5, None, "PO-9")
        tx_out = inventory_service.record_stock_out(product.id, 1, None, "S-9")
        tx_ret = inventory_service.record_stock_return(product.id, 1, None, "R-9")

        assert tx_in.reference_type == "PURCHASE"
        assert tx_out.reference_type == "SALE"
        assert tx_ret.reference_type == "RETURN"
        assert tx_in.reference_id == "PO-9"

    @pytest.mark.parametrize("quantity", [0, -5])
    def test_non_positive_in_rejected(self, product, quantity):
        with pytest.raises(InvalidQuantityError):
            inventory_service.record_stock_in(product.id, quantity)
        assert inventory_service.get_product_transactions(product.id) == []

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_out_rejected(self, product, quantity):
        inventory_service.record_stock_in(product.id, 10)
        with pytest.raises(InvalidQuantityError):
            inventory_service.record_stock_out(product.id, quantity)

    def test_out_beyond_stock_rejected_without_writing(self, product):
        inventory_service.record_stock_in(product.id, 5)

        with pytest.raises(InsufficientStockError) as exc:
            inventory_service.record_stock_out(product.id, 6)

        assert exc.value.details["on_hand"] == 5
        assert inventory_service.get_current_stock(product.id) == 5
        assert len(inventory_service.get_product_transactions(product.id)) == 1

    def test_out_of_exact_stock_allowed(self, product):
        inventory_service.record_stock_in(product.id, 5)
        inventory_service.record_stock_out(product.id, 5)
        assert inventory_service.get_current_stock(product.id) == 0

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.record_stock_in(404, 1)
        with pytest.raises(NotFoundError):
            inventory_service.get_current_stock(404)

    def test_notes_default_to_reference(self, product):
        tx = inventory_service.record_stock_in(product.id, 1, None, "PO-77")
        assert tx.notes == "PO-77"


class TestAdjustments:

    def test_positive_adjustment_increases(self, product):
        inventory_service.record_stock_in(product.id, 10)
        tx = inventory_service.record_stock_adjustment(product.id, 4, None, "Found in back room")

        assert tx.quantity == 4
        assert tx.adjustment_sign == 1
        assert inventory_service.get_current_stock(product.id) == 14

    def test_negative_adjustment_decreases(self, product):
        inventory_service.record_stock_in(product.id, 10)
        tx = inventory_service.record_stock_adjustment(product.id, -3, None, "Damaged")

        assert tx.quantity == 3
        assert tx.adjustment_sign == -1
        assert tx.quantity_delta == -3
        assert inventory_service.get_current_stock(product.id) == 7

    def test_adjustment_cannot_go_negative(self, product):
        inventory_service.record_stock_in(product.id, 2)
        with pytest.raises(InsufficientStockError):
            inventory_service.record_stock_adjustment(product.id, -3)
        assert inventory_service.get_current_stock(product.id) == 2

    def test_zero_adjustment_rejected(self, product):
        with pytest.raises(InvalidQuantityError):
            inventory_service.record_stock_adjustment(product.id, 0)

    def test_create_transaction_routes_signed_adjustment(self, product):
        inventory_service.record_stock_in(product.id, 10)
        inventory_service.create_transaction(
            product_id=product.id, transaction_type="ADJUSTMENT", quantity=-4, notes="Count"
        )
        assert inventory_service.get_current_stock(product.id) == 6

    def test_create_transaction_unknown_type(self, product):
        with pytest.raises(InvalidOperationError):
            inventory_service.create_transaction(product_id=product.id, transaction_type="MOVE", quantity=1)


# =============================================================================
# DERIVED COST AND EDITS
# =============================================================================


class TestTotalCost:

    def test_total_cost_computed_on_insert(self, product):
        tx = inventory_service.record_stock_in(product.id, 4, Decimal("2.50"))
        assert tx.total_cost == Decimal("10.00")

    def test_total_cost_absent_without_unit_cost(self, product):
        tx = inventory_service.record_stock_in(product.id, 4)
        assert tx.total_cost is None

    def test_total_cost_recomputed_on_update(self, product):
        tx = inventory_service.record_stock_in(product.id, 4, Decimal("2.50"))
        updated = inventory_service.update_transaction(tx.id, {"unit_cost": "3.00", "notes": "re-priced"})

        assert updated.total_cost == Decimal("12.00")
        assert updated.notes == "re-priced"

    def test_quantity_and_type_are_fixed(self, product):
        tx = inventory_service.record_stock_in(product.id, 4)
        with pytest.raises(InvalidOperationError):
            inventory_service.update_transaction(tx.id, {"quantity": 40})
        with pytest.raises(InvalidOperationError):
            inventory_service.update_transaction(tx.id, {"transaction_type": "OUT"})
        assert inventory_service.get_current_stock(product.id) == 4

    def test_rejected_edit_is_not_committed_later(self, db_session, product):
        tx = inventory_service.record_stock_in(product.id, 4, None, "PO-5")
        with pytest.raises(ValueError):
            inventory_service.update_transaction(tx.id, {"notes": "edited", "transaction_date": "garbage"})

        inventory_service.record_stock_in(product.id, 1)
        db_session.expire_all()
        assert db_session.get(InventoryTransaction, tx.id).notes == "PO-5"

    def test_update_unknown_transaction(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.update_transaction(77, {"notes": "x"})


# =============================================================================
# VALUATION AND LOW STOCK
# =============================================================================


class TestValuation:

    def test_value_counts_in_and_return_only(self, product):
        inventory_service.record_stock_in(product.id, 100, Decimal("10.00"))
        inventory_service.record_stock_out(product.id, 30, Decimal("15.00"))
        inventory_service.record_stock_return(product.id, 5, Decimal("10.00"))
        inventory_service.record_stock_adjustment(product.id, 2, Decimal("99.00"))

        assert inventory_service.get_inventory_value(product.id) == Decimal("1050.00")

    def test_missing_unit_cost_counts_as_zero(self, product):
        inventory_service.record_stock_in(product.id, 10)
        inventory_service.record_stock_in(product.id, 2, Decimal("1.25"))
        assert inventory_service.get_inventory_value(product.id) == Decimal("2.50")

    def test_total_value_across_products(self, make_product):
        a, b = make_product(), make_product()
        inventory_service.record_stock_in(a.id, 2, Decimal("1.00"))
        inventory_service.record_stock_in(b.id, 3, Decimal("2.00"))
        assert inventory_service.get_total_inventory_value() == Decimal("8.00")

    def test_low_stock_uses_derived_level(self, make_product):
        empty = make_product(min_stock_level=0)
        healthy = make_product(min_stock_level=5)
        at_threshold = make_product(min_stock_level=5)

        inventory_service.record_stock_in(healthy.id, 6)
        inventory_service.record_stock_in(at_threshold.id, 5)

        assert inventory_service.get_low_stock_product_ids() == [empty.id, at_threshold.id]

        inventory_service.record_stock_in(at_threshold.id, 1)
        assert inventory_service.get_low_stock_product_ids() == [empty.id]

    def test_summary(self, make_product):
        p = make_product(min_stock_level=3)
        inventory_service.record_stock_in(p.id, 2, Decimal("4.00"))
        summary = inventory_service.get_inventory_summary(p.id)

        assert summary["current_stock"] == 2
        assert summary["inventory_value"] == "8.00"
        assert summary["is_low_stock"] is True

    def test_has_enough_stock(self, product):
        inventory_service.record_stock_in(product.id, 3)
        assert inventory_service.has_enough_stock(product.id, 3) is True
        assert inventory_service.has_enough_stock(product.id, 4) is False


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:

    def test_date_range_is_inclusive(self, product):
        day1 = datetime(2026, 3, 1, 9, 0, 0)
        day2 = datetime(2026, 3, 2, 9, 0, 0)
        day3 = datetime(2026, 3, 3, 9, 0, 0)
        for when in (day1, day2, day3):
            inventory_service.record_stock_in(product.id, 1, transaction_date=when)

        found = inventory_service.get_transactions_by_date_range(day1, day2)
        assert [tx.transaction_date for tx in found] == [day1, day2]

    def test_iso_strings_accepted_for_ranges(self, product):
        inventory_service.record_stock_in(product.id, 1, transaction_date="2026-03-01T10:00:00Z")
        found = inventory_service.get_stock_movement_report("2026-03-01T00:00:00", "2026-03-01T23:59:59")
        assert len(found) == 1

    def test_by_type_and_reference(self, product):
        inventory_service.record_stock_in(product.id, 5, None, "PO-1")
        inventory_service.record_stock_out(product.id, 2, None, "SO-1")

        assert [tx.transaction_type for tx in inventory_service.get_transactions_by_type("OUT")] == ["OUT"]
        by_ref = inventory_service.get_transactions_by_reference("PURCHASE", "PO-1")
        assert len(by_ref) == 1 and by_ref[0].quantity == 5

    def test_search_notes(self, product):
        inventory_service.record_stock_in(product.id, 5, notes="Weekly delivery from supplier")
        inventory_service.record_stock_in(product.id, 5, notes="Transfer")
        assert len(inventory_service.search_transactions("supplier")) == 1

    def test_history_pages_are_zero_based(self, product):
        start = datetime(2026, 1, 1)
        for i in range(5):
            inventory_service.record_stock_in(product.id, i + 1, transaction_date=start + timedelta(days=i))

        first = inventory_service.get_transaction_history(product.id, 0, 2)
        third = inventory_service.get_transaction_history(product.id, 2, 2)

        assert [tx.quantity for tx in first] == [1, 2]
        assert [tx.quantity for tx in third] == [5]


# =============================================================================
# BULK
# =============================================================================


class TestBulkStockUpdate:

    def test_bulk_applies_in_order_with_running_balance(self, make_product):
        a, b = make_product(), make_product()
        created = inventory_service.bulk_stock_update([
            {"product_id": a.id, "transaction_type": "IN", "quantity": 10},
            {"product_id": a.id, "transaction_type": "OUT", "quantity": 8},
            {"product_id": b.id, "transaction_type": "IN", "quantity": 3},
            {"product_id": b.id, "transaction_type": "ADJUSTMENT", "quantity": -1},
        ])

        assert len(created) == 4
        assert inventory_service.get_current_stock(a.id) == 2
        assert inventory_service.get_current_stock(b.id) == 2

    def test_bulk_failure_writes_nothing(self, make_product):
        a, b = make_product(), make_product()
        inventory_service.record_stock_in(b.id, 1)

        with pytest.raises(InsufficientStockError):
            inventory_service.bulk_stock_update([
                {"product_id": a.id, "transaction_type": "IN", "quantity": 10},
                {"product_id": b.id, "transaction_type": "OUT", "quantity": 2},
            ])

        assert inventory_service.get_current_stock(a.id) == 0
        assert db_count() == 1

    def test_bulk_unknown_product_writes_nothing(self, product):
        with pytest.raises(NotFoundError):
            inventory_service.bulk_stock_update([
                {"product_id": product.id, "transaction_type": "IN", "quantity": 1},
                {"product_id": 999, "transaction_type": "IN", "quantity": 1},
            ])
        assert db_count() == 0


def db_count() -> int:
    return db.session.query(InventoryTransaction).count()
