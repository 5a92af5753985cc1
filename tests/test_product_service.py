"""
Product catalog tests.
"""

from decimal import Decimal

import pytest

from posoffice.errors import (
    DuplicateValueError,
    InvalidAmountError,
    InvalidOperationError,
    NotFoundError,
)
from posoffice.services import inventory_service, order_service, product_service
from posoffice.time_utils import utcnow


def _create(category, **fields):
    patch = {"name": "Cola 330ml", "category_id": category.id, "price": "1.50"}
    patch.update(fields)
    return product_service.create_product(patch)


class TestCreateProduct:

    def test_generated_sku(self, category):
        p = _create(category)
        assert p.sku == f"SKU{utcnow():%y%m}0001"
        assert p.status == "ACTIVE"
        assert p.price == Decimal("1.50")

    def test_explicit_sku_kept(self, category):
        assert _create(category, sku="COLA-330").sku == "COLA-330"

    def test_duplicate_sku(self, category):
        _create(category, sku="COLA-330")
        with pytest.raises(DuplicateValueError):
            _create(category, sku="COLA-330", name="Other")

    def test_duplicate_barcode(self, category):
        _create(category, barcode="8930000000011")
        with pytest.raises(DuplicateValueError):
            _create(category, barcode="8930000000011", name="Other")

    def test_unknown_category(self, db_session):
        with pytest.raises(NotFoundError):
            product_service.create_product({"name": "X", "category_id": 999, "price": "1.00"})

    @pytest.mark.parametrize("field", ["price", "cost_price", "sale_price"])
    def test_negative_prices_rejected(self, category, field):
        with pytest.raises(InvalidAmountError):
            _create(category, **{field: "-0.01"})

    @pytest.mark.parametrize("rate", ["-1", "100.01"])
    def test_tax_rate_out_of_range(self, category, rate):
        with pytest.raises(InvalidAmountError):
            _create(category, tax_rate=rate)

    def test_unknown_status_rejected(self, category):
        with pytest.raises(InvalidOperationError):
            _create(category, status="ON_SALE")


class TestUpdateAndDelete:

    def test_partial_update(self, category):
        p = _create(category, description="fizzy")
        product_service.update_product(p.id, {"price": "2.00"})
        refreshed = product_service.get_product(p.id)
        assert refreshed.price == Decimal("2.00")
        assert refreshed.description == "fizzy"

    def test_update_to_taken_sku(self, category):
        _create(category, sku="A")
        b = _create(category, sku="B")
        with pytest.raises(DuplicateValueError):
            product_service.update_product(b.id, {"sku": "A"})

    def test_status_update(self, category):
        p = _create(category)
        product_service.update_product_status(p.id, "DISCONTINUED")
        assert [x.id for x in product_service.get_products_by_status("DISCONTINUED")] == [p.id]
        assert product_service.get_active_products() == []

    def test_delete_unused(self, category):
        p = _create(category)
        product_service.delete_product(p.id)
        assert product_service.get_product(p.id) is None

    def test_delete_with_ledger_history_rejected(self, category):
        p = _create(category)
        inventory_service.record_stock_in(p.id, 1)
        with pytest.raises(InvalidOperationError):
            product_service.delete_product(p.id)

    def test_delete_with_order_lines_rejected(self, category):
        p = _create(category)
        order_service.create_order({"items": [{"product_id": p.id, "quantity": 1}]})
        with pytest.raises(InvalidOperationError):
            product_service.delete_product(p.id)


class TestPricing:

    def test_price_with_tax_uses_sale_price(self, category):
        p = _create(category, price="10.00", sale_price="8.00", tax_rate="10")
        assert product_service.calculate_price_with_tax(p.id) == Decimal("8.80")

    def test_price_with_tax_falls_back_to_price(self, category):
        p = _create(category, price="10.00", tax_rate="10")
        assert product_service.calculate_price_with_tax(p.id) == Decimal("11.00")

    def test_price_with_tax_rounds_half_up(self, category):
        p = _create(category, price="0.05", tax_rate="10")
        # 0.055 -> 0.06
        assert product_service.calculate_price_with_tax(p.id) == Decimal("0.06")

    def test_non_taxable_ignores_rate(self, category):
        p = _create(category, price="10.00", tax_rate="10", is_taxable=False)
        assert product_service.calculate_price_with_tax(p.id) == Decimal("10.00")

    def test_bulk_price_update(self, category):
        a = _create(category, price="1.00")
        b = _create(category, price="2.00")
        product_service.bulk_update_prices([a.id, b.id], "0.50")
        assert product_service.get_product(a.id).price == Decimal("1.50")
        assert product_service.get_product(b.id).price == Decimal("2.50")

    def test_bulk_price_negative_result_changes_nothing(self, category):
        a = _create(category, price="5.00")
        b = _create(category, price="1.00")
        with pytest.raises(InvalidAmountError):
            product_service.bulk_update_prices([a.id, b.id], "-2.00")
        assert product_service.get_product(a.id).price == Decimal("5.00")
        assert product_service.get_product(b.id).price == Decimal("1.00")


class TestQueries:

    def test_search(self, category):
        _create(category, name="Green Tea", sku="TEA-1")
        _create(category, name="Cola", description="contains caffeine")
        assert [p.name for p in product_service.search_products("tea")] == ["Green Tea"]
        assert [p.name for p in product_service.search_products("caffeine")] == ["Cola"]

    def test_price_range(self, category):
        _create(category, name="Cheap", price="1.00")
        _create(category, name="Mid", price="5.00")
        _create(category, name="Dear", price="9.00")
        assert [p.name for p in product_service.get_products_by_price_range("1.00", "5.00")] == ["Cheap", "Mid"]

    def test_low_stock_products(self, category):
        low = _create(category, name="Low", min_stock_level=5)
        ok = _create(category, name="Ok", min_stock_level=5)
        inventory_service.record_stock_in(low.id, 5)
        inventory_service.record_stock_in(ok.id, 6)
        assert [p.id for p in product_service.get_low_stock_products()] == [low.id]

    def test_by_category_and_exists(self, category):
        p = _create(category, sku="X-1", barcode="111")
        assert [x.id for x in product_service.get_products_by_category(category.id)] == [p.id]
        assert product_service.exists_by_sku("X-1") is True
        assert product_service.exists_by_barcode("111") is True
        assert product_service.get_product_by_sku("X-1").id == p.id
