# test_pricing.py
from decimal import Decimal

import pytest

from cinepos.services.pricing import PriceLine, compute_bill, effective_price, rupees, to_paise


def test_cash_pos_line_exclusive_gst():
    bill = compute_bill([PriceLine(unit_price=10000, quantity=2, tax_rate=Decimal(5), gst_type="EXCLUDE")])
    assert bill.subtotal == 20000
    assert bill.cgst == 500 and bill.sgst == 500
    assert bill.tax == 1000
    assert bill.total == 21000
    assert bill.as_dict()["total"] == 210.0

def test_inclusive_gst_splits_back_out():
    bill = compute_bill([PriceLine(unit_price=10500, quantity=1, tax_rate=Decimal(5), gst_type="INCLUDE")])
    assert bill.lines[0].line_total == 10500
    assert bill.tax == 500
    assert bill.subtotal == 10000
    assert (bill.cgst, bill.sgst) == (250, 250)

def test_odd_tax_split_half_even():
    # 505 paise of tax: cgst rounds half-even to 252, sgst takes the rest
    bill = compute_bill([PriceLine(unit_price=10100, quantity=1, tax_rate=Decimal(5))])
    assert bill.tax == 505
    assert (bill.cgst, bill.sgst) == (252, 253)
    assert bill.total == bill.subtotal + bill.tax

def test_rounding_applied_once_at_totals():
    # three lines of 0.5 paise tax each: 1.5 rounds to 2, not 0+0+0
    lines = [PriceLine(unit_price=10, quantity=1, tax_rate=Decimal(5)) for _ in range(3)]
    bill = compute_bill(lines)
    assert [ln.line_tax for ln in bill.lines] == [0, 0, 0]
    assert bill.tax == 2
    assert bill.total == 32
    assert bill.subtotal == 30

def test_discount_reduces_taxable_value():
    bill = compute_bill([PriceLine(unit_price=10000, quantity=1, tax_rate=Decimal(5),
                                   discount_percentage=Decimal(10))])
    assert bill.total_discount == 1000
    assert bill.subtotal == 9000
    assert bill.tax == 450
    assert bill.total == 9450
    assert bill.gross == 10000

def test_mixed_cart_identity_holds():
    lines = [
        PriceLine(unit_price=10000, quantity=1, tax_rate=Decimal(5), gst_type="EXCLUDE"),
        PriceLine(unit_price=19900, quantity=3, tax_rate=Decimal(18), gst_type="INCLUDE",
                  discount_percentage=Decimal("7.5")),
        PriceLine(unit_price=4999, quantity=7, tax_rate=Decimal(12), gst_type="EXCLUDE"),
    ]
    bill = compute_bill(lines)
    assert bill.total == bill.subtotal + bill.tax
    assert abs(bill.cgst - bill.sgst) <= 1
    assert bill.cgst + bill.sgst == bill.tax
    # same input, same answer
    assert compute_bill(lines) == bill

@pytest.mark.parametrize("line", [
    PriceLine(unit_price=100, quantity=0),
    PriceLine(unit_price=-1, quantity=1),
    PriceLine(unit_price=100, quantity=1, tax_rate=Decimal(101)),
    PriceLine(unit_price=100, quantity=1, gst_type="IGST"),
])
def test_invalid_lines_rejected(line):
    with pytest.raises(ValueError):
        compute_bill([line])

def test_money_helpers():
    assert to_paise(105) == 10500
    assert to_paise("0.125") == 12
    assert to_paise(None) == 0
    assert rupees(21000) == 210.0
    assert effective_price(22000, 19900) == 19900
    assert effective_price(22000, None) == 22000

def test_gross_net_ties_discount_back_to_total():
    bill = compute_bill([
        PriceLine(unit_price=10000, quantity=1, tax_rate=Decimal(5), discount_percentage=Decimal(10)),
        PriceLine(unit_price=10500, quantity=2, tax_rate=Decimal(5), gst_type="INCLUDE",
                  discount_percentage=Decimal(10)),
    ])
    out = bill.as_dict()
    assert bill.gross_net == bill.subtotal + bill.total_discount
    assert out["total"] == round(out["grossNet"] + out["tax"] - out["totalDiscount"], 2)
    assert round(out["cgst"] + out["sgst"], 2) == out["tax"]
