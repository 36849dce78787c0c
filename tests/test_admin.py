from datetime import datetime, timedelta
from decimal import Decimal

from models import ActivityLog, CartItem, Category, Deal, PricingTier, Product, db


def make_category(slug):
    category = Category(name=slug.title(), slug=slug)
    db.session.add(category)
    db.session.commit()
    return category.id


def make_product(slug, price, category_id=None, is_active=True):
    p = Product(name=slug.title(), slug=slug, base_price=Decimal(price), category_id=category_id, is_active=is_active)
    db.session.add(p)
    db.session.commit()
    return p.id


# ---------- access ----------

def test_admin_routes_require_admin(client, customer):
    assert client.get('/admin/products').status_code == 401
    assert client.get('/admin/products', headers=customer.headers).status_code == 403
    assert client.get('/admin/products', headers={'Authorization': 'Bearer bogus'}).status_code == 401


# ---------- products ----------

def test_create_and_update_product(client, admin):
    resp = client.post('/admin/products', json={
        'name': 'Holo Stickers', 'basePrice': '1.2500', 'shippingType': 'flat', 'flatShippingPrice': '3.00',
    }, headers=admin.headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body['slug'] == 'holo-stickers'
    assert body['basePrice'] == '1.2500'
    assert body['shippingType'] == 'flat'

    resp = client.patch(f"/admin/products/{body['id']}", json={'isActive': False}, headers=admin.headers)
    assert resp.get_json()['isActive'] is False
    assert client.get('/products/holo-stickers').status_code == 404


def test_deleting_product_clears_it_from_carts(client, admin, customer, product):
    client.post('/cart/add', json={'productId': product.id, 'quantity': 150})
    client.post('/cart/add', json={'productId': product.id, 'quantity': 20}, headers=customer.headers)

    assert client.delete(f'/admin/products/{product.id}', headers=admin.headers).status_code == 200
    assert CartItem.query.count() == 0

    assert client.get('/cart').get_json()['items'] == []
    resp = client.post('/checkout/shipping-quote', json={'shippingAddress': {'state': 'AZ'}})
    assert resp.status_code == 200
    assert resp.get_json()['shippingCost'] == '0.00'

    resp = client.post('/checkout', json={'shippingAddress': {'state': 'AZ', 'zip': '85001'}},
                       headers=customer.headers)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Cart is empty'


def test_product_shipping_fields_are_validated(client, admin):
    resp = client.post('/admin/products', json={'name': 'A', 'basePrice': 1, 'shippingType': 'teleport'},
                       headers=admin.headers)
    assert resp.status_code == 400
    resp = client.post('/admin/products', json={'name': 'B', 'basePrice': 1, 'shippingType': 'flat'},
                       headers=admin.headers)
    assert resp.status_code == 400
    resp = client.post('/admin/products', json={'name': 'C', 'basePrice': -1}, headers=admin.headers)
    assert resp.status_code == 400


def test_replace_options(client, admin, product):
    resp = client.put(f'/admin/products/{product.id}/options', json={'options': [
        {'optionType': 'cut', 'name': 'Kiss Cut', 'priceModifier': '-0.05', 'isDefault': True},
        {'optionType': 'coating', 'name': 'Matte', 'priceModifier': '0.10'},
    ]}, headers=admin.headers)
    assert resp.status_code == 200
    assert sorted(o['name'] for o in resp.get_json()) == ['Kiss Cut', 'Matte']

    body = client.post(f'/products/{product.slug}/calculate-price', json={'quantity': 10}).get_json()
    assert body['unitPrice'] == '0.9500'

    resp = client.put(f'/admin/products/{product.id}/options', json={'options': [
        {'optionType': 'cut', 'name': 'A', 'isDefault': True},
        {'optionType': 'cut', 'name': 'B', 'isDefault': True},
    ]}, headers=admin.headers)
    assert resp.status_code == 400


# ---------- tiers ----------

def test_replace_product_tiers_filters_invalid(client, admin, product):
    url = f'/admin/products/{product.id}/pricing-tiers'
    resp = client.put(url, json={'tiers': [
        {'minQuantity': 500, 'maxQuantity': None, 'pricePerUnit': '0.30'},
        {'minQuantity': 0, 'maxQuantity': 10, 'pricePerUnit': '0.90'},
        {'minQuantity': 50, 'maxQuantity': 499, 'pricePerUnit': '0.70'},
        {'minQuantity': 20, 'maxQuantity': 49, 'pricePerUnit': -1},
    ]}, headers=admin.headers)
    assert resp.status_code == 200
    tiers = resp.get_json()['tiers']
    assert [(t['minQuantity'], t['pricePerUnit']) for t in tiers] == [(50, '0.7000'), (500, '0.3000')]
    assert len(client.get(url, headers=admin.headers).get_json()) == 2

    assert client.put(url, json={'tiers': 'all of them'}, headers=admin.headers).status_code == 400


def test_products_without_tiers_use_global_set(client, admin):
    product_id = make_product('plain', '2.00')
    resp = client.put('/admin/pricing/global-tiers', json={'tiers': [
        {'minQuantity': 100, 'maxQuantity': None, 'pricePerUnit': '0.75'},
    ]}, headers=admin.headers)
    assert resp.status_code == 200

    body = client.post(f'/products/{product_id}/calculate-price', json={'quantity': 200}).get_json()
    assert body['tierSource'] == 'global'
    assert body['subtotal'] == '150.00'
    assert PricingTier.query.filter_by(product_id=None).count() == 1


def test_product_tiers_beat_global_tiers(client, admin, product):
    client.put('/admin/pricing/global-tiers', json={'tiers': [
        {'minQuantity': 1, 'maxQuantity': None, 'pricePerUnit': '0.10'},
    ]}, headers=admin.headers)
    body = client.post(f'/products/{product.slug}/calculate-price', json={'quantity': 150}).get_json()
    assert body['pricePerUnit'] == '0.5000'
    assert body['tierSource'] == 'product'


# ---------- bulk adjust ----------

def test_bulk_adjust_preview_does_not_write(client, admin):
    product_id = make_product('one', '1.00')
    resp = client.post('/admin/products/bulk-adjust', json={
        'adjustmentType': 'percentage', 'adjustmentValue': 10, 'preview': True,
    }, headers=admin.headers)
    assert resp.status_code == 200
    assert resp.get_json()['products'][0]['newPrice'] == '1.1000'
    assert db.session.get(Product, product_id).base_price == Decimal('1.0000')


def test_bulk_adjust_applies_to_category_including_inactive(client, admin):
    labels = make_category('labels')
    in_cat = make_product('label-a', '1.00', labels)
    hidden = make_product('label-b', '0.20', labels, is_active=False)
    other = make_product('sticker', '1.00')

    resp = client.post('/admin/products/bulk-adjust', json={
        'adjustmentType': 'flat', 'adjustmentValue': '-0.50', 'categoryId': labels,
    }, headers=admin.headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['success'] is True
    assert body['updatedCount'] == 2

    assert db.session.get(Product, in_cat).base_price == Decimal('0.5000')
    assert db.session.get(Product, hidden).base_price == Decimal('0.0000')
    assert db.session.get(Product, other).base_price == Decimal('1.0000')
    assert ActivityLog.query.filter_by(action='admin_bulk_adjust').count() == 1


def test_bulk_adjust_requires_type_and_value(client, admin):
    assert client.post('/admin/products/bulk-adjust', json={'adjustmentType': 'flat'},
                       headers=admin.headers).status_code == 400
    assert client.post('/admin/products/bulk-adjust', json={'adjustmentType': 'double', 'adjustmentValue': 2},
                       headers=admin.headers).status_code == 400


# ---------- deals ----------

def test_homepage_deals_respect_window_and_flag(client, admin):
    resp = client.post('/admin/deals', json={
        'title': 'Spring sale', 'dealPrice': '29.00', 'showOnHomepage': True, 'displayOrder': 2,
    }, headers=admin.headers)
    assert resp.status_code == 201
    client.post('/admin/deals', json={'title': 'First', 'dealPrice': '19.00', 'showOnHomepage': True,
                                      'displayOrder': 1}, headers=admin.headers)
    client.post('/admin/deals', json={'title': 'Not on homepage', 'dealPrice': '9.00'}, headers=admin.headers)
    db.session.add(Deal(title='Expired', deal_price=Decimal('5'), show_on_homepage=True,
                        ends_at=datetime.now() - timedelta(days=1)))
    db.session.commit()

    assert [d['title'] for d in client.get('/deals/homepage').get_json()] == ['First', 'Spring sale']
    assert len(client.get('/deals').get_json()) == 3

    assert client.post('/admin/deals', json={'title': 'No price'}, headers=admin.headers).status_code == 400


# ---------- promotions ----------

def test_promotion_crud(client, admin):
    resp = client.post('/admin/promotions', json={
        'code': 'summer', 'discountType': 'percentage', 'discountValue': 15, 'maxUses': 100,
    }, headers=admin.headers)
    assert resp.status_code == 201
    promo = resp.get_json()
    assert promo['code'] == 'SUMMER'

    dup = client.post('/admin/promotions', json={'code': 'SUMMER', 'discountType': 'flat', 'discountValue': 5},
                      headers=admin.headers)
    assert dup.status_code == 400
    bad = client.post('/admin/promotions', json={'code': 'X', 'discountType': 'percentage', 'discountValue': 150},
                      headers=admin.headers)
    assert bad.status_code == 400

    resp = client.patch(f"/admin/promotions/{promo['id']}", json={'isActive': False}, headers=admin.headers)
    assert resp.get_json()['isActive'] is False
    assert client.delete(f"/admin/promotions/{promo['id']}", headers=admin.headers).status_code == 200
    assert client.get('/admin/promotions', headers=admin.headers).get_json() == []


# ---------- users / logs ----------

def test_admin_cannot_demote_self(client, admin, customer):
    resp = client.patch(f'/admin/users/{admin.id}', json={'isAdmin': False}, headers=admin.headers)
    assert resp.status_code == 400

    resp = client.patch(f'/admin/users/{customer.id}', json={'isAdmin': True}, headers=admin.headers)
    assert resp.get_json()['isAdmin'] is True
    assert client.get('/admin/products', headers=customer.headers).status_code == 200


def test_activity_log_records_admin_actions(client, admin, product):
    client.put('/admin/pricing/global-tiers', json={'tiers': []}, headers=admin.headers)
    logs = client.get('/admin/logs?action=admin_replace_global_tiers', headers=admin.headers).get_json()
    assert logs['total'] == 1
    assert logs['logs'][0]['userId'] == admin.id


def test_unknown_route_and_method(client):
    assert client.get('/nowhere').get_json() == {'error': 'Endpoint not found'}
    assert client.delete('/health').status_code == 405
