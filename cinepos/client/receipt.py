"""Receipt rendering for print jobs.

``render_html`` produces the print-ready page used by the browser fallback;
``render_escpos`` produces the raw bytes the bridge writes to a thermal
printer. Both take the job's ``bill`` snapshot as built by the server, so a
reprint never consults current product state.
"""
import html

GST_BILL = "gst_bill"
CATEGORY_DOCKET = "category_docket"


def _money(x) -> str:
    try:
        return f"{float(x or 0):.2f}"
    except (TypeError, ValueError):
        return "0.00"


def _item_name(it: dict) -> str:
    name = it.get("name") or ""
    return f"{name} ({it['size']})" if it.get("size") else name


def render_html(kind: str, bill: dict) -> str:
    e = lambda v: html.escape(str(v if v is not None else ""), quote=True)  # noqa: E731
    theater = bill.get("theater") or {}
    order = bill.get("order") or {}
    docket = kind == CATEGORY_DOCKET
    title = f"{bill.get('category') or ''} Docket" if docket else "Tax Invoice"

    rows = []
    for it in bill.get("items") or []:
        if docket:
            note = f'<div class="muted">{e(it.get("specialInstructions"))}</div>' if it.get("specialInstructions") else ""
            rows.append(f'<tr><td class="name">{e(_item_name(it))}{note}</td><td class="qty">{e(it.get("quantity"))}</td></tr>')
        else:
            rows.append(
                f'<tr><td class="name">{e(_item_name(it))}<div class="muted">@ {e(_money(it.get("unitPrice")))}'
                f' | GST {e(it.get("taxRate"))}%</div></td>'
                f'<td class="qty">{e(it.get("quantity"))}</td><td class="amt">{e(_money(it.get("lineTotal")))}</td></tr>'
            )

    totals = ""
    if not docket:
        p = bill.get("pricing") or {}
        pay = bill.get("payment") or {}
        totals = f"""
    <div class="totals">
      <div class="row"><span class="muted">Subtotal</span><strong class="mono">{e(_money(p.get("subtotal")))}</strong></div>
      <div class="row"><span class="muted">Discount</span><strong class="mono">{e(_money(p.get("totalDiscount")))}</strong></div>
      <div class="row"><span class="muted">CGST</span><strong class="mono">{e(_money(p.get("cgst")))}</strong></div>
      <div class="row"><span class="muted">SGST</span><strong class="mono">{e(_money(p.get("sgst")))}</strong></div>
      <div class="row"><span>Total {e(p.get("currency") or "INR")}</span><strong class="mono">{e(_money(p.get("total")))}</strong></div>
      <div class="row"><span class="muted">Paid by</span><span>{e(pay.get("method"))}</span></div>
    </div>"""
    head_cols = '<th class="qty">Qty</th>' if docket else '<th class="qty">Qty</th><th class="amt">Amount</th>'
    footer = f'<p class="muted center">{e(bill.get("footer"))}</p>' if bill.get("footer") else ""
    seat = f'<div class="muted">Seat: <span class="mono">{e(order.get("seat"))}</span></div>' if order.get("seat") else ""
    gstin = f'<div class="muted center">GSTIN {e(theater.get("gstin"))}</div>' if theater.get("gstin") and not docket else ""

    return f"""<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>{e(title)} {e(order.get("orderNumber"))}</title>
    <style>
      :root {{ --w: 80mm; --muted: #666; --border: #ddd;
        --mono: ui-monospace, Menlo, Consolas, "Liberation Mono", monospace; }}
      body {{ margin: 0; padding: 8px; max-width: var(--w); font-family: system-ui, Arial, sans-serif; }}
      .muted {{ color: var(--muted); font-size: 11px; }}
      .mono {{ font-family: var(--mono); }}
      .center {{ text-align: center; }}
      h1 {{ font-size: 16px; margin: 0; text-align: center; }}
      h2 {{ font-size: 12px; margin: 4px 0 10px; text-align: center; }}
      table {{ width: 100%; border-collapse: collapse; font-size: 12px; }}
      thead th {{ text-align: left; border-bottom: 1px solid var(--border); padding: 4px 0; }}
      tbody td {{ padding: 4px 0; border-bottom: 1px dashed #eee; vertical-align: top; }}
      td.qty, th.qty {{ text-align: right; width: 15%; }}
      td.amt, th.amt {{ text-align: right; width: 28%; }}
      .totals {{ margin-top: 8px; font-size: 12px; }}
      .row {{ display: flex; justify-content: space-between; padding: 2px 0; }}
      @media print {{ body {{ padding: 0; }} }}
    </style>
  </head>
  <body>
    <h1>{e(theater.get("name"))}</h1>
    {gstin}
    <h2>{e(title)}</h2>
    <div class="muted">Order: <span class="mono">{e(order.get("orderNumber"))}</span></div>
    <div class="muted">Time: <span class="mono">{e(order.get("createdAt"))}</span></div>
    <div class="muted">Customer: {e(order.get("customerName"))}</div>
    {seat}
    <table>
      <thead><tr><th>Item</th>{head_cols}</tr></thead>
      <tbody>
        {''.join(rows)}
      </tbody>
    </table>
    {totals}
    {footer}
    <script>
      window.addEventListener('load', () => setTimeout(() => window.print(), 250));
    </script>
  </body>
</html>"""


# --- ESC/POS ---

ESC_INIT = b"\x1b@"
ESC_CUT = b"\x1dV\x00"


def _align(al: str) -> bytes:
    return b"\x1ba" + bytes([{"left": 0, "center": 1, "right": 2}[al]])


def _bold(on: bool) -> bytes:
    return b"\x1bE" + (b"\x01" if on else b"\x00")


def _pair(left: str, right: str, width: int) -> str:
    left = left[: max(width - len(right) - 1, 1)]
    return left + " " * (width - len(left) - len(right)) + right


def render_escpos(kind: str, bill: dict, width: int = 42) -> bytes:
    theater = bill.get("theater") or {}
    order = bill.get("order") or {}
    docket = kind == CATEGORY_DOCKET
    out = bytearray(ESC_INIT)

    def line(text: str = ""):
        out.extend(text.encode("ascii", "replace") + b"\n")

    out.extend(_align("center") + _bold(True))
    line(theater.get("name") or "")
    out.extend(_bold(False))
    if docket:
        line(f"*** {bill.get('category') or ''} ***")
    elif theater.get("gstin"):
        line(f"GSTIN {theater['gstin']}")
    out.extend(_align("left"))
    line(f"Order {order.get('orderNumber') or ''}")
    if order.get("seat"):
        line(f"Seat {order['seat']}")
    line("-" * width)
    for it in bill.get("items") or []:
        if docket:
            line(_pair(_item_name(it), f"x{it.get('quantity')}", width))
            if it.get("specialInstructions"):
                line(f"  > {it['specialInstructions']}")
        else:
            line(_pair(f"{it.get('quantity')} x {_item_name(it)}", _money(it.get("lineTotal")), width))
    line("-" * width)
    if not docket:
        p = bill.get("pricing") or {}
        for label, key in (("Subtotal", "subtotal"), ("Discount", "totalDiscount"), ("CGST", "cgst"), ("SGST", "sgst")):
            line(_pair(label, _money(p.get(key)), width))
        out.extend(_bold(True))
        line(_pair("TOTAL", _money(p.get("total")), width))
        out.extend(_bold(False))
        if bill.get("footer"):
            out.extend(_align("center"))
            line(bill["footer"])
    line()
    line()
    out.extend(ESC_CUT)
    return bytes(out)
