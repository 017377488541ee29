"""
Cart tax calculation from customer, item and address signals.

Output tax accounts come from the company's duties_and_taxes list. Each cart
line is resolved by the first applicable check:

1. Customer tax category: in state -> CGST+SGST, anything else -> IGST.
2. Item tax category: out state -> IGST, in state -> CGST+SGST.
3. Item tax template naming a GST percentage ("GST 18%") -> that rate as IGST.
4. Customer state vs company state:
   no customer state -> CGST+SGST; no company state -> IGST;
   same state -> CGST+SGST; different state -> IGST.

Nothing in here raises; missing or malformed input degrades to a zero rate.
"""
import math
import re
from typing import Any, Dict, List, Optional

OUT_STATE_KEYWORDS = ('out of state', 'outstate', 'out state', 'inter state', 'interstate', 'overseas')
IN_STATE_KEYWORDS = ('in state', 'instate', 'intra state', 'intrastate', 'within state')

IGST_ACCOUNT = 'output tax igst'
CGST_ACCOUNT = 'output tax cgst'
SGST_ACCOUNT = 'output tax sgst'

_GST_TEMPLATE_RE = re.compile(r'GST\s*(\d+(?:\.\d+)?)%', re.IGNORECASE)


def _num(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ''


def _matches(category: str, keywords) -> bool:
    lower = category.lower().strip()
    return bool(lower) and any(kw in lower for kw in keywords)


def is_out_state(category: Any) -> bool:
    return _matches(_text(category), OUT_STATE_KEYWORDS)


def is_in_state(category: Any) -> bool:
    return _matches(_text(category), IN_STATE_KEYWORDS)


def gst_rate_from_template(template: Any) -> Optional[float]:
    """'GST 18%' -> 18.0; None when the template names no percentage."""
    m = _GST_TEMPLATE_RE.search(_text(template))
    if not m:
        return None
    return _num(m.group(1))


def find_tax_rate(taxes: Any, pattern: str) -> float:
    """Rate of the first non-group tax row whose name or account_name contains ``pattern``."""
    if not isinstance(taxes, list):
        return 0.0
    needle = pattern.lower()
    for t in taxes:
        if not isinstance(t, dict):
            continue
        if t.get('is_group') in (1, '1', True):
            continue
        name = str(t.get('name') or '').lower()
        account = str(t.get('account_name') or '').lower()
        if needle in name or needle in account:
            return _num(t.get('tax_rate'))
    return 0.0


def _igst(taxes) -> Dict[str, Any]:
    rate = find_tax_rate(taxes, IGST_ACCOUNT)
    return {'type': 'igst', 'rate': rate, 'igst_rate': rate}


def _cgst_sgst(taxes) -> Dict[str, Any]:
    c_rate = find_tax_rate(taxes, CGST_ACCOUNT)
    s_rate = find_tax_rate(taxes, SGST_ACCOUNT)
    return {'type': 'cgst_sgst', 'rate': c_rate + s_rate, 'cgst_rate': c_rate, 'sgst_rate': s_rate}


def resolve_item_tax(item: Optional[Dict[str, Any]], customer: Optional[Dict[str, Any]],
                     taxes: Any, company_state: Any) -> Dict[str, Any]:
    """Pick the tax treatment for one cart line; returns type, combined rate and component rates."""
    item = item if isinstance(item, dict) else {}
    customer = customer if isinstance(customer, dict) else {}

    customer_cat = _text(customer.get('tax_category')) or _text(customer.get('gst_category'))
    if customer_cat:
        # customer category is authoritative; unmatched categories land on IGST
        if is_in_state(customer_cat):
            return _cgst_sgst(taxes)
        return _igst(taxes)

    item_cat = _text(item.get('tax_category'))
    if item_cat:
        if is_out_state(item_cat):
            return _igst(taxes)
        if is_in_state(item_cat):
            return _cgst_sgst(taxes)

    template_rate = gst_rate_from_template(item.get('item_tax_template'))
    if template_rate is not None:
        return {'type': 'template', 'rate': template_rate, 'igst_rate': template_rate}

    customer_state = (_text(customer.get('state')) or _text(customer.get('gst_state'))
                      or _text(customer.get('address_state')))
    comp_state = _text(company_state)
    if not customer_state:
        return _cgst_sgst(taxes)
    if not comp_state:
        return _igst(taxes)
    if customer_state.lower() == comp_state.lower():
        return _cgst_sgst(taxes)
    return _igst(taxes)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_cart_tax(cart: Any, customer: Optional[Dict[str, Any]], duties_and_taxes: Any,
                       company_state: Any) -> Dict[str, Any]:
    """
    cart: [{'item_code', 'rate', 'quantity', 'tax_category', 'item_tax_template'}, ...]
    duties_and_taxes: {'taxes': [{'account_name', 'tax_rate', 'is_group'}, ...]}

    Returns {'subtotal', 'total_tax', 'grand_total', 'breakdown': [{'label', 'rate', 'amount'}]}.
    grand_total is the only rounded figure.
    """
    taxes = duties_and_taxes.get('taxes') if isinstance(duties_and_taxes, dict) else None
    taxes = taxes if isinstance(taxes, list) else []

    subtotal = 0.0
    total_tax = 0.0
    lines: List[Dict[str, Any]] = []

    for item in cart if isinstance(cart, list) else []:
        if not isinstance(item, dict):
            continue
        amount = _num(item.get('rate')) * _num(item.get('quantity'))
        subtotal += amount

        info = resolve_item_tax(item, customer, taxes, company_state)
        line_tax = amount * info['rate'] / 100
        total_tax += line_tax
        if line_tax <= 0:
            continue
        if info['type'] == 'cgst_sgst':
            lines.append({'label': 'CGST', 'rate': info['cgst_rate'], 'amount': amount * info['cgst_rate'] / 100})
            lines.append({'label': 'SGST', 'rate': info['sgst_rate'], 'amount': amount * info['sgst_rate'] / 100})
        else:
            lines.append({'label': 'IGST', 'rate': info['rate'], 'amount': line_tax})

    breakdown: List[Dict[str, Any]] = []
    for line in lines:
        existing = next((b for b in breakdown if b['label'] == line['label'] and b['rate'] == line['rate']), None)
        if existing:
            existing['amount'] += line['amount']
        else:
            breakdown.append(dict(line))

    return {
        'subtotal': subtotal,
        'total_tax': total_tax,
        'grand_total': round_half_up(subtotal + total_tax),
        'breakdown': [b for b in breakdown if b['amount'] > 0],
    }
