"""shipping quote calculator and the json-backed global shipping settings"""

import json
import logging
import os
from decimal import Decimal

import config
from errors import ValidationError
from pricing import round_money, to_decimal

logger = logging.getLogger(__name__)

SHIPPING_TYPES = ('free', 'flat', 'calculated')

# placeholder zone policy: non-contiguous states ship at a surcharge
REMOTE_STATES = ('AK', 'HI')
REMOTE_MULTIPLIER = Decimal('1.5')


def default_settings():
    return dict(config.DEFAULT_SHIPPING_SETTINGS)


def read_shipping_settings(path):
    """read on every quote, any problem with the file means defaults"""
    settings = default_settings()
    try:
        with open(path) as f:
            raw = json.load(f)
    except FileNotFoundError:
        return settings
    except (OSError, ValueError):
        logger.warning("shipping settings at %s unreadable, using defaults", path)
        return settings

    if not isinstance(raw, dict):
        return settings

    cost = raw.get('shippingCost')
    if isinstance(cost, (int, float)) and not isinstance(cost, bool) and cost >= 0:
        settings['shippingCost'] = cost
    if isinstance(raw.get('freeShipping'), bool):
        settings['freeShipping'] = raw['freeShipping']
    if isinstance(raw.get('automaticShipping'), bool):
        settings['automaticShipping'] = raw['automaticShipping']
    return settings


def write_shipping_settings(path, data):
    if not isinstance(data, dict):
        raise ValidationError('No data provided')

    cost = data.get('shippingCost')
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0:
        raise ValidationError('shippingCost must be a non-negative number')

    settings = {
        'shippingCost': cost,
        'freeShipping': bool(data.get('freeShipping')),
        'automaticShipping': bool(data.get('automaticShipping')),
    }

    folder = os.path.dirname(path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(settings, f, indent=2)
    return settings


def location_multiplier(address):
    state = ((address or {}).get('state') or '').strip().upper()
    if state in REMOTE_STATES:
        return REMOTE_MULTIPLIER
    return Decimal('1')


def compute_shipping_quote(items, address, settings):
    """
    items are dicts with shippingType, flatShippingPrice and quantity.
    Returns {'shippingCost': Decimal, 'locationMultiplier': Decimal}.
    """
    if settings.get('freeShipping'):
        return {'shippingCost': Decimal('0.00'), 'locationMultiplier': Decimal('1')}

    base = to_decimal(settings.get('shippingCost', 0), 'shippingCost')
    flat_total = Decimal('0')
    calculated_units = 0

    for item in items:
        shipping_type = item.get('shippingType') or 'calculated'
        qty = max(1, int(item.get('quantity') or 0))
        if shipping_type == 'free':
            continue
        if shipping_type == 'flat':
            flat = item.get('flatShippingPrice')
            flat = to_decimal(flat, 'flatShippingPrice') if flat is not None else Decimal('0')
            if flat > 0:
                flat_total += flat * qty
            continue
        calculated_units += qty

    if calculated_units == 0:
        calculated = Decimal('0')
    elif settings.get('automaticShipping'):
        calculated = base * calculated_units
    else:
        calculated = base

    multiplier = location_multiplier(address)
    return {
        'shippingCost': round_money((flat_total + calculated) * multiplier),
        'locationMultiplier': multiplier,
    }
