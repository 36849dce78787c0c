import json
from decimal import Decimal

import pytest

from errors import ValidationError
from shipping import compute_shipping_quote, read_shipping_settings, write_shipping_settings

SETTINGS = {'shippingCost': 15, 'freeShipping': False, 'automaticShipping': False}
AZ = {'state': 'AZ', 'zip': '85001'}


def item(shipping_type='calculated', quantity=1, flat=None):
    return {'shippingType': shipping_type, 'quantity': quantity, 'flatShippingPrice': flat}


def test_empty_cart_costs_nothing():
    assert compute_shipping_quote([], AZ, SETTINGS)['shippingCost'] == Decimal('0.00')
    assert compute_shipping_quote([], {'state': 'AK'}, dict(SETTINGS, automaticShipping=True))['shippingCost'] == 0


def test_free_shipping_setting_ignores_items():
    items = [item('flat', 3, Decimal('5')), item('calculated', 10)]
    quote = compute_shipping_quote(items, {'state': 'HI'}, dict(SETTINGS, freeShipping=True))
    assert quote == {'shippingCost': Decimal('0.00'), 'locationMultiplier': Decimal('1')}


def test_flat_item_charged_per_unit():
    quote = compute_shipping_quote([item('flat', 3, Decimal('5'))], AZ, SETTINGS)
    assert quote['shippingCost'] == Decimal('15.00')


def test_flat_item_without_price_contributes_nothing():
    assert compute_shipping_quote([item('flat', 3, None)], AZ, SETTINGS)['shippingCost'] == Decimal('0.00')


def test_free_items_are_skipped():
    assert compute_shipping_quote([item('free', 40)], AZ, SETTINGS)['shippingCost'] == Decimal('0.00')


def test_calculated_items_charged_once_without_automatic_shipping():
    one = compute_shipping_quote([item(quantity=1)], AZ, SETTINGS)
    two = compute_shipping_quote([item(quantity=1), item(quantity=4)], AZ, SETTINGS)
    assert one['shippingCost'] == two['shippingCost'] == Decimal('15.00')


def test_automatic_shipping_multiplies_by_units():
    quote = compute_shipping_quote([item(quantity=1), item(quantity=4)], AZ, dict(SETTINGS, automaticShipping=True))
    assert quote['shippingCost'] == Decimal('75.00')


def test_missing_shipping_type_counts_as_calculated():
    quote = compute_shipping_quote([{'quantity': 2}], AZ, SETTINGS)
    assert quote['shippingCost'] == Decimal('15.00')


def test_zero_quantity_counts_as_one_unit():
    quote = compute_shipping_quote([item('flat', 0, Decimal('4'))], AZ, SETTINGS)
    assert quote['shippingCost'] == Decimal('4.00')


@pytest.mark.parametrize('state', ['AK', 'HI', ' ak ', 'hi'])
def test_remote_states_cost_one_and_a_half_times(state):
    items = [item('flat', 3, Decimal('5')), item('calculated', 2)]
    base = compute_shipping_quote(items, AZ, SETTINGS)
    remote = compute_shipping_quote(items, {'state': state}, SETTINGS)
    assert remote['locationMultiplier'] == Decimal('1.5')
    assert remote['shippingCost'] == base['shippingCost'] * Decimal('1.5')


def test_mixed_cart():
    items = [item('flat', 2, Decimal('2.50')), item('free', 5), item('calculated', 3)]
    assert compute_shipping_quote(items, AZ, SETTINGS)['shippingCost'] == Decimal('20.00')


# ---------- settings file ----------

def test_missing_settings_file_gives_defaults(tmp_path):
    settings = read_shipping_settings(str(tmp_path / 'nope.json'))
    assert settings == {'shippingCost': 15, 'freeShipping': False, 'automaticShipping': False}


def test_corrupt_settings_file_gives_defaults(tmp_path):
    path = tmp_path / 'shipping.json'
    path.write_text('{not json')
    assert read_shipping_settings(str(path))['shippingCost'] == 15


def test_bad_keys_fall_back_individually(tmp_path):
    path = tmp_path / 'shipping.json'
    path.write_text(json.dumps({'shippingCost': 'cheap', 'freeShipping': True, 'automaticShipping': 'yes'}))
    assert read_shipping_settings(str(path)) == {
        'shippingCost': 15, 'freeShipping': True, 'automaticShipping': False,
    }


def test_write_validates_and_coerces(tmp_path):
    path = str(tmp_path / 'nested' / 'shipping.json')
    saved = write_shipping_settings(path, {'shippingCost': 9.5, 'freeShipping': 1, 'automaticShipping': ''})
    assert saved == {'shippingCost': 9.5, 'freeShipping': True, 'automaticShipping': False}
    assert read_shipping_settings(path) == saved

    with pytest.raises(ValidationError):
        write_shipping_settings(path, {'shippingCost': -1})
    with pytest.raises(ValidationError):
        write_shipping_settings(path, {'shippingCost': '10'})


# ---------- quote endpoint ----------

def test_quote_endpoint_without_cart(client):
    resp = client.post('/checkout/shipping-quote', json={'shippingAddress': AZ})
    assert resp.status_code == 200
    assert resp.get_json() == {'shippingCost': '0.00', 'locationMultiplier': 1.0, 'reason': 'no-cart'}


def test_quote_endpoint_uses_cookie_cart(client, product):
    resp = client.post('/cart/add', json={'productId': product.id, 'quantity': 5})
    assert resp.status_code == 200
    assert 'cart-session-id' in resp.headers.get('Set-Cookie', '')

    az = client.post('/checkout/shipping-quote', json={'shippingAddress': AZ}).get_json()
    ak = client.post('/checkout/shipping-quote', json={'shippingAddress': {'state': 'AK'}}).get_json()
    assert az == {'shippingCost': '15.00', 'locationMultiplier': 1.0}
    assert ak == {'shippingCost': '22.50', 'locationMultiplier': 1.5}


def test_quote_endpoint_reads_settings_each_time(client, product, admin):
    client.post('/cart/add', json={'productId': product.id, 'quantity': 2})
    resp = client.post('/admin/settings/shipping', json={'shippingCost': 4, 'automaticShipping': True},
                       headers=admin.headers)
    assert resp.status_code == 200

    quote = client.post('/checkout/shipping-quote', json={'shippingAddress': AZ}).get_json()
    assert quote['shippingCost'] == '8.00'
    assert client.get('/settings/shipping').get_json()['automaticShipping'] is True


def test_settings_endpoint_rejects_negative_cost(client, admin):
    resp = client.post('/admin/settings/shipping', json={'shippingCost': -3}, headers=admin.headers)
    assert resp.status_code == 400
    assert 'shippingCost' in resp.get_json()['error']
