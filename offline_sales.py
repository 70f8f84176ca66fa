"""
Offline sale capture: cart pricing, payment status and the append-only
recorder that writes completed sales into the local queue.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from offline_store import LocalStore, LocalStoreError, iso_now

logger = logging.getLogger(__name__)

DISCOUNT_FIXED = 'fixed'
DISCOUNT_PERCENTAGE = 'percentage'

PAID = 'paid'
PARTIAL = 'partial'
UNPAID = 'unpaid'


class SaleValidationError(ValueError):
    """Raised when a sale cannot be recorded because its input is invalid."""


def _money(value: float) -> float:
    return round(float(value), 2)


def _round_half_up(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def _cents(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def _as_number(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise SaleValidationError(f"{label} must be a number")


def normalize_cart(cart: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate cart lines and return them in the stored shape."""
    if not isinstance(cart, list) or not cart:
        raise SaleValidationError("Cart is empty")
    lines = []
    for idx, item in enumerate(cart, start=1):
        if not isinstance(item, dict):
            raise SaleValidationError(f"Cart line #{idx} is invalid")
        variant_id = item.get('variant_id') if item.get('variant_id') is not None else item.get('product_id')
        if variant_id in (None, ''):
            raise SaleValidationError(f"Cart line #{idx} missing variant_id")
        qty = _as_number(item.get('quantity', item.get('qty')), f"Cart line #{idx} quantity")
        if qty <= 0:
            raise SaleValidationError(f"Cart line #{idx} must have positive quantity")
        price = _as_number(item.get('price', item.get('unit_price')), f"Cart line #{idx} price")
        if price < 0:
            raise SaleValidationError(f"Cart line #{idx} must have non-negative price")
        lines.append({
            'variant_id': variant_id,
            'product_name': item.get('product_name') or item.get('name') or '',
            'variant_name': item.get('variant_name'),
            'sku': item.get('sku'),
            'quantity': qty,
            'price': price,
            'line_total': _money(qty * price),
        })
    return lines


def cart_subtotal(lines: List[Dict[str, Any]]) -> float:
    return _money(sum(float(l['quantity']) * float(l['price']) for l in lines))


def _discount_terms(discount: Any) -> Optional[Tuple[str, float]]:
    """Validated (type, value) of a discount descriptor, or None when it is empty."""
    if discount in (None, '', {}):
        return None
    if not isinstance(discount, dict):
        raise SaleValidationError("Discount must be an object with type and value")
    kind = discount.get('type') or DISCOUNT_FIXED
    if not isinstance(kind, str):
        raise SaleValidationError("Discount type must be a string")
    kind = kind.strip().lower()
    if kind not in (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE):
        raise SaleValidationError(f"Unknown discount type {kind!r}")
    value = _as_number(discount.get('value') or 0, "Discount value")
    if value < 0:
        raise SaleValidationError("Discount value cannot be negative")
    if kind == DISCOUNT_PERCENTAGE and value > 100:
        raise SaleValidationError("Percentage discount cannot exceed 100")
    return kind, value


def compute_discount(subtotal: float, discount: Optional[Dict[str, Any]]) -> Optional[float]:
    """Discount amount for a descriptor, or None when no discount applies.

    Percentages round half up to whole currency units. Either kind is clamped
    to the subtotal so the total never goes negative.
    """
    terms = _discount_terms(discount)
    if terms is None or terms[1] == 0:
        return None
    kind, value = terms
    if kind == DISCOUNT_PERCENTAGE:
        return _money(min(_round_half_up(subtotal * value / 100), subtotal))
    return _money(min(value, subtotal))


def compute_payment(total: float, tendered: float) -> Dict[str, Any]:
    """Split what was tendered into paid, due and change, and derive the status.

    The split is done in cents so amount_paid + due_amount is exactly total.
    """
    total_c = _cents(total)
    tendered_c = _cents(tendered)
    paid_c = min(tendered_c, total_c)
    due_c = total_c - paid_c
    if due_c == 0:
        status = PAID
    elif tendered_c <= 0:
        status = UNPAID
    else:
        status = PARTIAL
    return {
        'amount_tendered': float(tendered_c),
        'amount_paid': float(paid_c),
        'due_amount': float(due_c),
        'change_due': float(max(Decimal('0'), tendered_c - total_c)),
        'payment_status': status,
    }


def price_sale(cart: List[Dict[str, Any]], amount_tendered: Any,
               discount: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Compute every figure stored with a sale, without touching the store."""
    lines = normalize_cart(cart)
    tendered = _as_number(amount_tendered if amount_tendered not in (None, '') else 0, "Amount tendered")
    if tendered < 0:
        raise SaleValidationError("Amount tendered cannot be negative")
    subtotal = cart_subtotal(lines)
    discount_amount = compute_discount(subtotal, discount)
    total = _money(subtotal - (discount_amount or 0))
    priced = {
        'cart': lines,
        'subtotal': subtotal,
        'discount': None,
        'total': total,
    }
    if discount_amount is not None:
        kind, value = _discount_terms(discount)
        priced['discount'] = {'type': kind, 'value': value, 'amount': discount_amount}
    priced.update(compute_payment(total, tendered))
    return priced


def record_offline_sale(
    store: LocalStore,
    cart: List[Dict[str, Any]],
    payment_method: str,
    business_id: Any,
    user_id: Any,
    amount_tendered: Any,
    customer_id: Optional[int] = None,
    discount: Optional[Dict[str, Any]] = None,
    require_customer_for_credit: bool = False,
) -> Dict[str, Any]:
    """
    Append a completed sale to the local queue and return it with its local id.

    cart = [ {'variant_id': 12, 'product_name': 'Sugar', 'quantity': 2, 'price': 4500} ]
    discount = {'type': 'percentage', 'value': 10}   # or 'fixed', or None

    Storage failures are raised as LocalStoreError; a completed sale is never
    dropped silently.
    """
    if not (payment_method or '').strip():
        raise SaleValidationError("Payment method is required")
    if business_id in (None, ''):
        raise SaleValidationError("Business id is required")
    if user_id in (None, ''):
        raise SaleValidationError("User id is required")
    sale = price_sale(cart, amount_tendered, discount)
    if require_customer_for_credit and sale['due_amount'] > 0 and customer_id in (None, ''):
        raise SaleValidationError("A customer must be selected for credit or partial payments")

    sale.update({
        'created_utc': iso_now(),
        'business_id': str(business_id),
        'user_id': str(user_id),
        'customer_id': customer_id if customer_id != '' else None,
        'payment_method': payment_method.strip(),
    })
    try:
        sale['id'] = store.add_offline_sale(sale)
    except LocalStoreError:
        logger.error("Could not record offline sale for business %s (total=%s)", business_id, sale['total'])
        raise
    sale['sync_status'] = 'pending'
    sale['attempts'] = 0
    logger.info("Recorded offline sale #%s total=%s status=%s", sale['id'], sale['total'], sale['payment_status'])
    return sale


def build_receipt(sale: Dict[str, Any], store_info: Dict[str, Any],
                  customer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Receipt payload for a recorded sale."""
    discount = sale.get('discount') or {}
    return {
        'sale_info': {
            'id': sale.get('id'),
            'created_utc': sale.get('created_utc'),
            'payment_method': sale.get('payment_method'),
            'subtotal': sale.get('subtotal'),
            'discount': discount.get('amount') or 0,
            'total_amount': sale.get('total'),
            'amount_tendered': sale.get('amount_tendered'),
            'change_due': sale.get('change_due') or 0,
            'amount_due': sale.get('due_amount') or 0,
            'payment_status': sale.get('payment_status'),
        },
        'store_info': dict(store_info or {}),
        'customer_info': customer,
        'sale_items': [
            {
                'product_name': line.get('product_name'),
                'variant_name': line.get('variant_name'),
                'quantity': line.get('quantity'),
                'unit_price': line.get('price'),
                'subtotal': line.get('line_total'),
            }
            for line in sale.get('cart') or []
        ],
    }
