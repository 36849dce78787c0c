import os
import secrets
from decimal import Decimal
from types import SimpleNamespace

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('LOG_LEVEL', 'WARNING')

import pytest
from werkzeug.security import generate_password_hash

import emails
from app import app as flask_app
from models import AuthSession, PricingTier, Product, ProductOption, User, db


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        SHIPPING_SETTINGS_PATH=str(tmp_path / 'shipping.json'),
        PAYMENT_WEBHOOK_SECRET='whsec_test',
        SMTP_HOST=None,
        ADMIN_EMAIL=None,
    )
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send(to, subject, body):
        sent.append({'to': to, 'subject': subject, 'body': body})
        return True

    monkeypatch.setattr(emails, 'send_email', fake_send)
    return sent


def make_user(email, is_admin=False):
    user = User(
        email=email,
        name=email.split('@')[0],
        password_hash=generate_password_hash('password123'),
        is_admin=is_admin,
    )
    db.session.add(user)
    db.session.flush()
    token = secrets.token_hex(16)
    db.session.add(AuthSession(token=token, user_id=user.id))
    db.session.commit()
    return SimpleNamespace(id=user.id, email=email, headers={'Authorization': f'Bearer {token}'})


@pytest.fixture
def customer(app):
    return make_user('casey@example.com')


@pytest.fixture
def other_customer(app):
    return make_user('robin@example.com')


@pytest.fixture
def admin(app):
    return make_user('admin@example.com', is_admin=True)


@pytest.fixture
def product(app):
    """$1.00 sticker, one 100-999 tier at 0.50, gloss (default) or matte +0.10"""
    p = Product(name='Die-Cut Stickers', slug='die-cut', base_price=Decimal('1.00'), shipping_type='calculated')
    db.session.add(p)
    db.session.flush()
    vinyl = ProductOption(product_id=p.id, option_type='material', name='Vinyl',
                          price_modifier=Decimal('0'), is_default=True)
    gloss = ProductOption(product_id=p.id, option_type='coating', name='Gloss',
                          price_modifier=Decimal('0'), is_default=True)
    matte = ProductOption(product_id=p.id, option_type='coating', name='Matte',
                          price_modifier=Decimal('0.10'))
    db.session.add_all([vinyl, gloss, matte])
    db.session.add(PricingTier(product_id=p.id, min_quantity=100, max_quantity=999,
                               price_per_unit=Decimal('0.50')))
    db.session.commit()
    return SimpleNamespace(id=p.id, slug=p.slug, vinyl=vinyl.id, gloss=gloss.id, matte=matte.id)


def add_design(client, user, product_id=None):
    resp = client.post('/designs', json={'name': 'Logo', 'canvasJson': {'objects': []}, 'productId': product_id},
                       headers=user.headers)
    assert resp.status_code == 201
    return resp.get_json()['id']


def place_order(client, user, product_id, quantity=150, with_design=True, promotion_code=None, state='AZ'):
    body = {'productId': product_id, 'quantity': quantity}
    if with_design:
        body['designId'] = add_design(client, user, product_id)
    resp = client.post('/cart/add', json=body, headers=user.headers)
    assert resp.status_code == 200, resp.get_json()

    checkout = {'shippingAddress': {'line1': '1 Main St', 'city': 'Phoenix', 'state': state, 'zip': '85001'}}
    if promotion_code:
        checkout['promotionCode'] = promotion_code
    resp = client.post('/checkout', json=checkout, headers=user.headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()
