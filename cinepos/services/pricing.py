"""GST pricing engine.

Pure functions over cart lines. Amounts are carried as integer paise; line
math is exact ``Decimal`` and rounding (half-even, to the paisa) is applied
once, at the order totals. Per-line figures are rounded independently for
display only and never summed back into the totals.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, localcontext
from typing import Iterable

HUNDRED = Decimal(100)
ZERO = Decimal(0)


def _round(x: Decimal) -> int:
    return int(x.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def to_paise(amount) -> int:
    """Rupees (float/str/Decimal) -> paise, half-even."""
    if amount is None:
        return 0
    return _round(Decimal(str(amount)) * HUNDRED)


def rupees(paise: int | None) -> float:
    return float(Decimal(paise or 0) / HUNDRED)


@dataclass(frozen=True)
class PriceLine:
    unit_price: int                 # paise, effective (offer price already applied)
    quantity: int
    tax_rate: Decimal = ZERO        # percent
    gst_type: str = "EXCLUDE"       # INCLUDE | EXCLUDE
    discount_percentage: Decimal = ZERO


@dataclass(frozen=True)
class LineAmounts:
    line_subtotal: int
    line_tax: int
    line_discount: int
    line_total: int


@dataclass(frozen=True)
class Bill:
    lines: tuple[LineAmounts, ...]
    gross: int
    subtotal: int
    cgst: int
    sgst: int
    tax: int
    total_discount: int
    total: int

    @property
    def gross_net(self) -> int:
        """Taxable value before discount."""
        return self.subtotal + self.total_discount

    def as_dict(self) -> dict:
        return {
            "subtotal": rupees(self.subtotal),
            "grossNet": rupees(self.gross_net),
            "cgst": rupees(self.cgst),
            "sgst": rupees(self.sgst),
            "tax": rupees(self.tax),
            "totalDiscount": rupees(self.total_discount),
            "total": rupees(self.total),
        }


def _check(line: PriceLine):
    if line.quantity < 1:
        raise ValueError("quantity must be >= 1")
    if line.unit_price < 0:
        raise ValueError("unit price must be >= 0")
    if not (ZERO <= Decimal(line.tax_rate) <= HUNDRED):
        raise ValueError("tax rate must be within 0..100")
    if not (ZERO <= Decimal(line.discount_percentage) <= HUNDRED):
        raise ValueError("discount must be within 0..100")
    if line.gst_type not in ("INCLUDE", "EXCLUDE"):
        raise ValueError(f"unknown gst type {line.gst_type!r}")


def _line(line: PriceLine) -> tuple[Decimal, Decimal, Decimal, Decimal, Decimal]:
    rate = Decimal(line.tax_rate)
    gross = Decimal(line.unit_price) * line.quantity
    discount = gross * Decimal(line.discount_percentage) / HUNDRED
    if line.gst_type == "EXCLUDE":
        net = gross - discount
        tax = net * rate / HUNDRED
        total = net + tax
    else:
        total = gross - discount
        tax = total * rate / (HUNDRED + rate)
        net = total - tax
    return gross, net, tax, discount, total


def compute_bill(lines: Iterable[PriceLine]) -> Bill:
    lines = list(lines)
    for ln in lines:
        _check(ln)

    with localcontext() as ctx:
        ctx.prec = 50
        per_line = []
        gross = net = tax = discount = total = ZERO
        for ln in lines:
            g, n, t, d, tot = _line(ln)
            per_line.append(LineAmounts(
                line_subtotal=_round(n), line_tax=_round(t),
                line_discount=_round(d), line_total=_round(tot),
            ))
            gross += g
            net += n
            tax += t
            discount += d
            total += tot

        total_p = _round(total)
        tax_p = _round(tax)
        cgst = _round(Decimal(tax_p) / 2)

    return Bill(
        lines=tuple(per_line),
        gross=_round(gross),
        subtotal=total_p - tax_p,
        cgst=cgst,
        sgst=tax_p - cgst,
        tax=tax_p,
        total_discount=_round(discount),
        total=total_p,
    )


def effective_price(base_price: int, offer_price: int | None) -> int:
    """Combo/offer price overrides the base price when present."""
    return offer_price if offer_price is not None else base_price


def lines_from_items(items) -> list[PriceLine]:
    """Rebuild engine input from persisted order item snapshots."""
    return [
        PriceLine(
            unit_price=int(it.unit_price),
            quantity=int(it.quantity),
            tax_rate=Decimal(str(it.tax_rate or 0)),
            gst_type=getattr(it.gst_type, "value", it.gst_type),
            discount_percentage=Decimal(str(it.discount_percentage or 0)),
        )
        for it in items
    ]
