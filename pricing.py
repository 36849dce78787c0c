"""
Pricing engine.

Plain functions over Decimal. Nothing here touches the database or the
request, so the cart, checkout and calculate-price routes all share it.

Tiers are dicts: {'min': int, 'max': int or None, 'price': Decimal}.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from errors import ValidationError

CENTS = Decimal('0.01')
FOUR_PLACES = Decimal('0.0001')

OPTION_TYPES = ('material', 'coating', 'cut')
ADJUSTMENT_TYPES = ('percentage', 'flat')
DISCOUNT_TYPES = ('percentage', 'flat')


def to_decimal(value, field='value'):
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f'{field} must be a number')
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f'{field} must be a number')
    if not result.is_finite():
        raise ValidationError(f'{field} must be a number')
    return result


def round_money(value):
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def round_price(value):
    return Decimal(value).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def check_quantity(quantity):
    """quantities are whole units, 1 or more"""
    if isinstance(quantity, bool):
        raise ValidationError('Quantity must be a whole number')
    if isinstance(quantity, str) and quantity.strip().isdigit():
        quantity = int(quantity.strip())
    if not isinstance(quantity, int):
        raise ValidationError('Quantity must be a whole number')
    if quantity <= 0:
        raise ValidationError('Quantity must be at least 1')
    return quantity


# ---------- TIERS ----------

def select_tier(quantity, tiers):
    if not tiers:
        return None

    matching = [
        t for t in tiers
        if t['min'] <= quantity and (t['max'] is None or quantity <= t['max'])
    ]
    if matching:
        # overlapping brackets: the most specific (highest min) wins
        return max(matching, key=lambda t: t['min'])

    # past the end of every bounded bracket, the top tier keeps applying
    if all(t['max'] is not None and quantity > t['max'] for t in tiers):
        return max(tiers, key=lambda t: t['min'])

    return None


def normalize_tiers(raw_tiers):
    """
    Turn a PUT body into tier dicts. Entries with a non-positive (or
    unparseable) min quantity or price are dropped without complaint.
    """
    if not isinstance(raw_tiers, list):
        raise ValidationError('tiers must be an array')

    result = []
    for raw in raw_tiers:
        if not isinstance(raw, dict):
            continue
        try:
            min_qty = int(raw.get('minQuantity'))
            price = Decimal(str(raw.get('pricePerUnit', raw.get('price'))))
        except (TypeError, ValueError, InvalidOperation):
            continue
        if min_qty <= 0 or not price.is_finite() or price <= 0:
            continue

        max_qty = raw.get('maxQuantity')
        if max_qty in (None, ''):
            max_qty = None
        else:
            try:
                max_qty = int(max_qty)
            except (TypeError, ValueError):
                max_qty = None
            if max_qty is not None and max_qty < min_qty:
                continue

        result.append({'min': min_qty, 'max': max_qty, 'price': round_price(price)})

    result.sort(key=lambda t: t['min'])
    return result


# ---------- OPTIONS ----------

def resolve_options(options, selected):
    """
    Pick one option per type. `options` are the product's active option rows,
    `selected` maps option type -> option id. A type the customer left out
    falls back to that type's default option. Unknown ids are rejected.
    """
    selected = selected or {}
    if not isinstance(selected, dict):
        raise ValidationError('selectedOptions must be an object')

    by_id = {o.id: o for o in options if o.is_active}
    chosen = {}

    for option_type, option_id in selected.items():
        if option_id in (None, ''):
            continue
        opt = by_id.get(option_id)
        if opt is None or opt.option_type != option_type:
            raise ValidationError(f'Unknown {option_type} option: {option_id}')
        chosen[option_type] = opt

    for opt in options:
        if opt.is_active and opt.is_default and opt.option_type not in chosen:
            chosen[opt.option_type] = opt

    return [chosen[t] for t in sorted(chosen, key=_option_sort_key)]


def _option_sort_key(option_type):
    if option_type in OPTION_TYPES:
        return (OPTION_TYPES.index(option_type), option_type)
    return (len(OPTION_TYPES), option_type)


def option_modifiers(chosen_options):
    return [to_decimal(o.price_modifier, 'priceModifier') for o in chosen_options]


# ---------- LINE PRICING ----------

def unit_price(quantity, base_price, tiers, modifiers):
    quantity = check_quantity(quantity)
    tier = select_tier(quantity, tiers)
    per_unit = to_decimal(tier['price'] if tier else base_price, 'price')
    # modifiers may be negative, the unit price is not floored
    return round_price(per_unit + sum(modifiers, Decimal('0')))


def price_line(quantity, base_price, tiers, modifiers):
    """line total for `quantity` units, rounded half-up to cents"""
    per_unit = unit_price(quantity, base_price, tiers, modifiers)
    return round_money(per_unit * quantity)


def quote_line(quantity, base_price, tiers, chosen_options):
    """full breakdown used by calculate-price and the cart"""
    quantity = check_quantity(quantity)
    tier = select_tier(quantity, tiers)
    per_unit = round_price(to_decimal(tier['price'] if tier else base_price, 'price'))

    add_ons = []
    for opt in chosen_options:
        modifier = to_decimal(opt.price_modifier, 'priceModifier')
        add_ons.append({
            'optionId': opt.id,
            'type': opt.option_type,
            'name': opt.name,
            'priceModifier': round_price(modifier),
            'total': round_money(modifier * quantity),
        })

    modifiers = [a['priceModifier'] for a in add_ons]
    options_cost = sum(modifiers, Decimal('0'))

    return {
        'tier': tier,
        'pricePerUnit': per_unit,
        'optionsCost': round_price(options_cost),
        'unitPrice': unit_price(quantity, base_price, tiers, modifiers),
        'quantity': quantity,
        'subtotal': price_line(quantity, base_price, tiers, modifiers),
        'baseSubtotal': round_money(per_unit * quantity),
        'addOns': add_ons,
    }


# ---------- ADJUSTMENTS ----------

def adjust_price(current, adjustment_type, value):
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError('adjustmentType must be percentage or flat')
    current = to_decimal(current, 'price')
    value = to_decimal(value, 'adjustmentValue')

    if adjustment_type == 'percentage':
        new_price = current * (Decimal('1') + value / Decimal('100'))
    else:
        new_price = current + value

    if new_price < 0:
        new_price = Decimal('0')
    return round_price(new_price)


# ---------- PROMOTIONS / TOTALS ----------

def check_promotion(promo, subtotal, now, user_redemptions=None):
    """raises ValidationError with a customer-facing reason if the code can't be used"""
    if not promo or not promo.is_active:
        raise ValidationError('Invalid promo code')
    if promo.starts_at and now < promo.starts_at:
        raise ValidationError('Promo code is not active yet')
    if promo.expires_at and now > promo.expires_at:
        raise ValidationError('Promo code has expired')
    if promo.max_uses is not None and promo.uses_count >= promo.max_uses:
        raise ValidationError('Promo code has reached maximum uses')
    if user_redemptions is not None and promo.uses_per_user and user_redemptions >= promo.uses_per_user:
        raise ValidationError('You have already used this promo code')
    if promo.min_order_amount is not None and to_decimal(subtotal) < to_decimal(promo.min_order_amount):
        raise ValidationError(f'Minimum order ${round_money(promo.min_order_amount)} required for this promo')


def promotion_discount(discount_type, value, subtotal):
    subtotal = to_decimal(subtotal, 'subtotal')
    value = to_decimal(value, 'discountValue')
    if discount_type == 'percentage':
        discount = subtotal * value / Decimal('100')
    elif discount_type == 'flat':
        discount = min(value, subtotal)
    else:
        raise ValidationError('discountType must be percentage or flat')
    return round_money(max(discount, Decimal('0')))


def order_totals(subtotal, shipping_cost, discount, tax_rate):
    subtotal = round_money(subtotal)
    discount = round_money(discount)
    shipping_cost = round_money(shipping_cost)
    taxable = max(subtotal - discount, Decimal('0'))
    tax = round_money(taxable * to_decimal(tax_rate, 'TAX_RATE'))
    return {
        'subtotal': subtotal,
        'discount': discount,
        'shipping': shipping_cost,
        'tax': tax,
        'total': round_money(taxable + tax + shipping_cost),
    }
