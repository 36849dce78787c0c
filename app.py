"""
StickerFlow storefront API.

Custom sticker shop: catalog with quantity tiers and material/coating/cut
options, saved canvas designs, cart and checkout, and the order + artwork
back office.

Run locally:
    flask --app app init-db --seed
    flask --app app run
"""

import hmac
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from functools import wraps

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import or_
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

import config
import emails
import lifecycle
import outbox
import pricing
import shipping
from errors import AppError, AuthError, DependencyFailure, NotFoundError, ValidationError
from models import (
    ActivityLog, AuthSession, Cart, CartItem, Category, Deal, Design, Notification,
    Order, OrderItem, OutboxEvent, PricingTier, Product, ProductOption, Promotion,
    PromotionRedemption, User, db, money,
)

logging.basicConfig(
    level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger('stickerflow')

app = Flask(__name__)
app.config.from_object(config)
db.init_app(app)

# ============== HELPERS ==============

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def validate_email(email):
    return EMAIL_PATTERN.match(email or '') is not None


def slugify(text):
    return re.sub(r'[^a-z0-9]+', '-', (text or '').lower()).strip('-')


def json_body(required=True):
    data = request.get_json(silent=True)
    if data is None and not required:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('No data provided')
    return data


def parse_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def parse_datetime(value, field):
    if value in (None, ''):
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field} must be an ISO date')
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def parse_money(value, field, allow_none=False):
    if value in (None, '') and allow_none:
        return None
    amount = pricing.to_decimal(value, field)
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative')
    return amount


def parse_int(value, field, allow_none=False, minimum=None):
    if value in (None, '') and allow_none:
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a whole number')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a whole number')
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}')
    return number


def paginate_args(default_per_page=50):
    page = max(request.args.get('page', 1, type=int) or 1, 1)
    per_page = request.args.get('perPage', default_per_page, type=int) or default_per_page
    return page, min(max(per_page, 1), 200)


def generate_order_number():
    # format: SB-YYYYMMDD-XXXXXX
    return f"SB-{datetime.now().strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def log_action(action, user_id=None, data=None):
    """audit trail, flushed with the caller's commit"""
    db.session.add(ActivityLog(
        action=action,
        user_id=user_id,
        data=data,
        ip=request.remote_addr if request else None,
        request_path=request.path if request else None,
    ))


# ---------- AUTH HELPERS ----------

def get_user_from_session():
    if 'user' in g:
        return g.user

    g.user = None
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    token = header[len('Bearer '):].strip()
    sess = db.session.get(AuthSession, token) if token else None
    if not sess:
        return None

    timeout = timedelta(hours=app.config['SESSION_TIMEOUT_HOURS'])
    if datetime.now() - sess.created_at > timeout:
        db.session.delete(sess)
        db.session.commit()
        return None

    g.user = sess.user
    return g.user


def require_user(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_user_from_session():
            raise AuthError()
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        lifecycle.check_admin(get_user_from_session())
        return f(*args, **kwargs)
    return decorated


# ---------- CART HELPERS ----------

def get_cart_session_id(create=False):
    sid = request.cookies.get(app.config['CART_COOKIE_NAME'])
    if not sid:
        sid = g.get('new_cart_session')
    if not sid and create:
        sid = uuid.uuid4().hex
        g.new_cart_session = sid
    return sid


def find_cart():
    user = get_user_from_session()
    if user:
        return Cart.query.filter_by(user_id=user.id).first()
    sid = get_cart_session_id()
    if not sid:
        return None
    return Cart.query.filter_by(session_id=sid, user_id=None).first()


def get_or_create_cart():
    cart = find_cart()
    if cart:
        return cart
    user = get_user_from_session()
    if user:
        cart = Cart(user_id=user.id)
    else:
        cart = Cart(session_id=get_cart_session_id(create=True))
    db.session.add(cart)
    return cart


def merge_session_cart(user):
    """move an anonymous cookie cart onto the user who just logged in"""
    sid = request.cookies.get(app.config['CART_COOKIE_NAME'])
    if not sid:
        return
    guest = Cart.query.filter_by(session_id=sid, user_id=None).first()
    if not guest:
        return
    own = Cart.query.filter_by(user_id=user.id).first()
    if own is None:
        guest.user_id = user.id
        guest.session_id = None
    else:
        # load both collections before moving, a lazy load would autoflush the orphan
        own_items = own.items
        for item in list(guest.items):
            guest.items.remove(item)
            own_items.append(item)
        db.session.delete(guest)
    Design.query.filter_by(session_id=sid, user_id=None).update({Design.user_id: user.id})


def cart_summary(cart):
    items = cart.items if cart else []
    subtotal = sum((i.line_total() for i in items), Decimal('0'))
    return {
        'id': cart.id if cart else None,
        'items': [i.to_dict() for i in items],
        'subtotal': money(subtotal),
        'itemCount': sum(i.quantity for i in items),
    }


def cart_shipping_items(cart):
    return [
        {
            'shippingType': i.product.shipping_type,
            'flatShippingPrice': i.product.flat_shipping_price,
            'quantity': i.quantity,
        }
        for i in cart.items
    ]


# ---------- CATALOG HELPERS ----------

def find_product(slug_or_id, active_only=True):
    query = Product.query.filter(or_(Product.slug == slug_or_id, Product.id == slug_or_id))
    product = query.first()
    if not product or (active_only and not product.is_active):
        raise NotFoundError('Product not found')
    return product


def global_tiers():
    return PricingTier.query.filter_by(product_id=None).order_by(PricingTier.min_quantity).all()


def tiers_for(product):
    """product tiers win over the global set, base price is the last resort"""
    if product.tiers:
        return [t.as_tier() for t in product.tiers], 'product'
    return [t.as_tier() for t in global_tiers()], 'global'


def quote_product(product, quantity, selected_options):
    chosen = pricing.resolve_options(product.options, selected_options)
    tiers, tier_set = tiers_for(product)
    quote = pricing.quote_line(quantity, product.base_price, tiers, chosen)
    quote['tierSource'] = tier_set if quote['tier'] else 'base'
    quote['selectedOptions'] = {o.option_type: o.id for o in chosen}
    return quote


def quote_to_dict(quote):
    return {
        'pricePerUnit': money(quote['pricePerUnit'], '0.0001'),
        'optionsCost': money(quote['optionsCost'], '0.0001'),
        'unitPrice': money(quote['unitPrice'], '0.0001'),
        'quantity': quote['quantity'],
        'subtotal': money(quote['subtotal']),
        'baseSubtotal': money(quote['baseSubtotal']),
        'tierSource': quote['tierSource'],
        'selectedOptions': quote['selectedOptions'],
        'addOns': [
            {
                'optionId': a['optionId'],
                'type': a['type'],
                'name': a['name'],
                'priceModifier': money(a['priceModifier'], '0.0001'),
                'total': money(a['total']),
            }
            for a in quote['addOns']
        ],
    }


def apply_product_fields(product, data):
    if 'name' in data:
        if not str(data['name'] or '').strip():
            raise ValidationError('name is required')
        product.name = data['name'].strip()
    if 'slug' in data and data['slug']:
        product.slug = slugify(data['slug'])
    if not product.slug:
        product.slug = slugify(product.name)
    if 'description' in data:
        product.description = data['description']
    if 'basePrice' in data:
        product.base_price = pricing.round_price(parse_money(data['basePrice'], 'basePrice'))
    if 'categoryId' in data:
        if data['categoryId'] and not db.session.get(Category, data['categoryId']):
            raise NotFoundError('Category not found')
        product.category_id = data['categoryId'] or None
    if 'isActive' in data:
        product.is_active = parse_bool(data['isActive'])
    if 'isFeatured' in data:
        product.is_featured = parse_bool(data['isFeatured'])
    if 'shippingType' in data:
        if data['shippingType'] not in shipping.SHIPPING_TYPES:
            raise ValidationError(f"shippingType must be one of: {', '.join(shipping.SHIPPING_TYPES)}")
        product.shipping_type = data['shippingType']
    if 'flatShippingPrice' in data:
        product.flat_shipping_price = parse_money(data['flatShippingPrice'], 'flatShippingPrice', allow_none=True)

    if product.shipping_type == 'flat' and not (product.flat_shipping_price and product.flat_shipping_price > 0):
        raise ValidationError('flatShippingPrice is required for flat shipping')

    with db.session.no_autoflush:
        clash = Product.query.filter(Product.slug == product.slug, Product.id != product.id).first()
    if clash:
        raise ValidationError('A product with this slug already exists')


def replace_tiers(product_id, raw_tiers):
    tiers = pricing.normalize_tiers(raw_tiers)
    PricingTier.query.filter_by(product_id=product_id).delete(synchronize_session=False)
    for t in tiers:
        db.session.add(PricingTier(
            product_id=product_id,
            min_quantity=t['min'],
            max_quantity=t['max'],
            price_per_unit=t['price'],
        ))
    db.session.flush()
    rows = PricingTier.query.filter_by(product_id=product_id).order_by(PricingTier.min_quantity).all()
    return [t.to_dict() for t in rows]


# ---------- ORDER HELPERS ----------

def expected_version(data):
    value = data.get('expectedVersion')
    if value is None:
        value = request.headers.get('If-Match')
    return lifecycle.parse_version(value)


def load_own_order(order_id):
    order = lifecycle.load_order(order_id)
    lifecycle.check_access(order, get_user_from_session())
    return order


def find_promotion(code):
    if not code or not str(code).strip():
        raise ValidationError('Promo code is required')
    return Promotion.query.filter_by(code=str(code).strip().upper()).first()


def promotion_for_cart(code, subtotal, user):
    promo = find_promotion(code)
    used = None
    if promo and user:
        used = PromotionRedemption.query.filter_by(promotion_id=promo.id, user_id=user.id).count()
    pricing.check_promotion(promo, subtotal, datetime.now(), used)
    return promo, pricing.promotion_discount(promo.discount_type, promo.discount_value, subtotal)


def claim_promotion_use(promo):
    # counted in sql so two checkouts can't both take the last use
    rows = (
        Promotion.query
        .filter(Promotion.id == promo.id)
        .filter(or_(Promotion.max_uses.is_(None), Promotion.uses_count < Promotion.max_uses))
        .update({Promotion.uses_count: Promotion.uses_count + 1}, synchronize_session=False)
    )
    if rows == 0:
        raise ValidationError('Promo code has reached maximum uses')


def apply_promotion_fields(promo, data):
    if 'code' in data:
        code = str(data['code'] or '').strip().upper()
        if not code:
            raise ValidationError('code is required')
        clash = Promotion.query.filter(Promotion.code == code, Promotion.id != promo.id).first()
        if clash:
            raise ValidationError('Promo code already exists')
        promo.code = code
    if 'description' in data:
        promo.description = data['description']
    if 'discountType' in data:
        if data['discountType'] not in pricing.DISCOUNT_TYPES:
            raise ValidationError('discountType must be percentage or flat')
        promo.discount_type = data['discountType']
    if 'discountValue' in data:
        value = parse_money(data['discountValue'], 'discountValue')
        if value <= 0:
            raise ValidationError('discountValue must be greater than 0')
        promo.discount_value = value
    if 'minOrderAmount' in data:
        promo.min_order_amount = parse_money(data['minOrderAmount'], 'minOrderAmount', allow_none=True)
    if 'maxUses' in data:
        promo.max_uses = parse_int(data['maxUses'], 'maxUses', allow_none=True, minimum=1)
    if 'usesPerUser' in data:
        promo.uses_per_user = parse_int(data['usesPerUser'], 'usesPerUser', minimum=0)
    if 'isActive' in data:
        promo.is_active = parse_bool(data['isActive'])
    if 'startsAt' in data:
        promo.starts_at = parse_datetime(data['startsAt'], 'startsAt')
    if 'expiresAt' in data:
        promo.expires_at = parse_datetime(data['expiresAt'], 'expiresAt')

    if promo.discount_type == 'percentage' and promo.discount_value is not None and promo.discount_value > 100:
        raise ValidationError('Percentage discount cannot exceed 100')
    if promo.starts_at and promo.expires_at and promo.expires_at < promo.starts_at:
        raise ValidationError('expiresAt must be after startsAt')


def apply_deal_fields(deal, data):
    if 'title' in data:
        if not str(data['title'] or '').strip():
            raise ValidationError('title is required')
        deal.title = data['title'].strip()
    for key, attr in (('description', 'description'), ('imageUrl', 'image_url'), ('badgeText', 'badge_text')):
        if key in data:
            setattr(deal, attr, data[key])
    if 'productId' in data:
        if data['productId'] and not db.session.get(Product, data['productId']):
            raise NotFoundError('Product not found')
        deal.product_id = data['productId'] or None
    if 'originalPrice' in data:
        deal.original_price = parse_money(data['originalPrice'], 'originalPrice', allow_none=True)
    if 'dealPrice' in data:
        deal.deal_price = parse_money(data['dealPrice'], 'dealPrice')
    if 'quantity' in data:
        deal.quantity = parse_int(data['quantity'], 'quantity', allow_none=True, minimum=1)
    if 'displayOrder' in data:
        deal.display_order = parse_int(data['displayOrder'], 'displayOrder')
    if 'isActive' in data:
        deal.is_active = parse_bool(data['isActive'])
    if 'showOnHomepage' in data:
        deal.show_on_homepage = parse_bool(data['showOnHomepage'])
    if 'startsAt' in data:
        deal.starts_at = parse_datetime(data['startsAt'], 'startsAt')
    if 'endsAt' in data:
        deal.ends_at = parse_datetime(data['endsAt'], 'endsAt')

    if deal.deal_price is None:
        raise ValidationError('dealPrice is required')


def live_deals_query(now=None):
    now = now or datetime.now()
    return Deal.query.filter(
        Deal.is_active.is_(True),
        or_(Deal.starts_at.is_(None), Deal.starts_at <= now),
        or_(Deal.ends_at.is_(None), Deal.ends_at >= now),
    )


def design_owned_by_caller(design):
    user = get_user_from_session()
    if user and (user.is_admin or design.user_id == user.id):
        return True
    sid = get_cart_session_id()
    return bool(sid and design.user_id is None and design.session_id == sid)


# ============== INIT DATA ==============

def seed_demo_catalog():
    """demo catalog for local development"""
    stickers = Category(name='Stickers', slug='stickers')
    labels = Category(name='Labels', slug='labels')
    db.session.add_all([stickers, labels])
    db.session.flush()

    die_cut = Product(
        name='Die-Cut Stickers', slug='die-cut-stickers', category_id=stickers.id,
        description='Custom shaped vinyl stickers cut to the outline of your design.',
        base_price=Decimal('1.0000'), is_featured=True, shipping_type='calculated',
    )
    circles = Product(
        name='Circle Stickers', slug='circle-stickers', category_id=stickers.id,
        description='Round stickers in any size.',
        base_price=Decimal('0.8000'), shipping_type='calculated',
    )
    roll = Product(
        name='Roll Labels', slug='roll-labels', category_id=labels.id,
        description='Product labels on a roll for hand or machine application.',
        base_price=Decimal('0.3000'), shipping_type='flat', flat_shipping_price=Decimal('5.00'),
    )
    db.session.add_all([die_cut, circles, roll])
    db.session.flush()

    for product in (die_cut, circles):
        db.session.add_all([
            ProductOption(product_id=product.id, option_type='material', name='White Vinyl',
                          price_modifier=Decimal('0'), is_default=True),
            ProductOption(product_id=product.id, option_type='material', name='Holographic',
                          price_modifier=Decimal('0.25')),
            ProductOption(product_id=product.id, option_type='coating', name='Gloss',
                          price_modifier=Decimal('0'), is_default=True),
            ProductOption(product_id=product.id, option_type='coating', name='Matte',
                          price_modifier=Decimal('0.10')),
            ProductOption(product_id=product.id, option_type='cut', name='Kiss Cut',
                          price_modifier=Decimal('-0.05')),
            ProductOption(product_id=product.id, option_type='cut', name='Die Cut',
                          price_modifier=Decimal('0'), is_default=True),
        ])

    db.session.add_all([
        PricingTier(product_id=die_cut.id, min_quantity=50, max_quantity=99, price_per_unit=Decimal('0.8000')),
        PricingTier(product_id=die_cut.id, min_quantity=100, max_quantity=999, price_per_unit=Decimal('0.5000')),
        PricingTier(product_id=die_cut.id, min_quantity=1000, max_quantity=None, price_per_unit=Decimal('0.2500')),
        # global set, used by products without their own tiers
        PricingTier(product_id=None, min_quantity=100, max_quantity=499, price_per_unit=Decimal('0.6000')),
        PricingTier(product_id=None, min_quantity=500, max_quantity=None, price_per_unit=Decimal('0.4000')),
    ])

    db.session.add(Promotion(code='WELCOME10', description='10% off your first order',
                             discount_type='percentage', discount_value=Decimal('10'), uses_per_user=1))
    db.session.add(Deal(title='100 Die-Cut Stickers', product_id=die_cut.id,
                        original_price=Decimal('100.00'), deal_price=Decimal('49.00'), quantity=100,
                        badge_text='Best seller', show_on_homepage=True))
    db.session.commit()


# ============== ROUTES ==============

@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'timestamp': datetime.now().isoformat()})


# ---------- AUTH ----------

@app.route('/register', methods=['POST'])
def register():
    data = json_body()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    name = str(data.get('name') or '').strip()

    if not email or not password:
        raise ValidationError('Email and password required')
    if not validate_email(email):
        raise ValidationError('Invalid email format')
    if len(password) < app.config['PASSWORD_MIN_LENGTH']:
        raise ValidationError(f"Password must be at least {app.config['PASSWORD_MIN_LENGTH']} characters")
    if User.query.filter_by(email=email).first():
        raise ValidationError('Email already registered')

    user = User(email=email, name=name or email.split('@')[0], password_hash=generate_password_hash(password))
    db.session.add(user)
    db.session.flush()
    log_action('register', user.id)
    db.session.commit()

    return jsonify(user.to_dict()), 201


@app.route('/login', methods=['POST'])
def login():
    data = json_body()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        log_action('login_failed', data={'email': email})
        db.session.commit()
        raise AuthError('Invalid credentials')

    token = secrets.token_hex(32)
    db.session.add(AuthSession(
        token=token,
        user_id=user.id,
        ip=request.remote_addr,
        user_agent=request.headers.get('User-Agent', '')[:200],
    ))
    user.last_login = datetime.now()
    merge_session_cart(user)
    log_action('login', user.id)
    db.session.commit()

    return jsonify({'token': token, 'user': user.to_dict()})


@app.route('/logout', methods=['POST'])
@require_user
def logout():
    token = request.headers.get('Authorization', '')[len('Bearer '):].strip()
    sess = db.session.get(AuthSession, token)
    if sess:
        db.session.delete(sess)
    log_action('logout', g.user.id)
    db.session.commit()
    return jsonify({'message': 'Logged out successfully'})


@app.route('/me', methods=['GET'])
@require_user
def get_current_user():
    return jsonify(g.user.to_dict())


# ---------- CATALOG ----------

@app.route('/categories', methods=['GET'])
def list_categories():
    return jsonify([c.to_dict() for c in Category.query.order_by(Category.name).all()])


@app.route('/products', methods=['GET'])
def list_products():
    query = Product.query.filter_by(is_active=True)
    category = request.args.get('category')
    if category:
        query = query.join(Category).filter(or_(Category.slug == category, Category.id == category))
    if parse_bool(request.args.get('featured', '')):
        query = query.filter(Product.is_featured.is_(True))
    return jsonify([p.to_dict() for p in query.order_by(Product.name).all()])


@app.route('/products/<slug_or_id>', methods=['GET'])
def get_product(slug_or_id):
    product = find_product(slug_or_id)
    out = product.to_dict(detail=True)
    if not product.tiers:
        out['pricingTiers'] = [t.to_dict() for t in global_tiers()]
        out['tierSource'] = 'global'
    else:
        out['tierSource'] = 'product'
    return jsonify(out)


@app.route('/products/<slug_or_id>/calculate-price', methods=['POST'])
def calculate_price(slug_or_id):
    product = find_product(slug_or_id)
    data = json_body()
    quote = quote_product(product, data.get('quantity'), data.get('selectedOptions'))
    return jsonify(quote_to_dict(quote))


# ---------- DESIGNS ----------

@app.route('/designs', methods=['POST'])
def create_design():
    data = json_body()
    user = get_user_from_session()
    if data.get('productId') and not db.session.get(Product, data['productId']):
        raise NotFoundError('Product not found')

    design = Design(
        user_id=user.id if user else None,
        session_id=None if user else get_cart_session_id(create=True),
        product_id=data.get('productId'),
        name=str(data.get('name') or '').strip() or 'Untitled design',
        canvas_json=data.get('canvasJson'),
        preview_url=data.get('previewUrl'),
    )
    db.session.add(design)
    db.session.commit()
    return jsonify(design.to_dict()), 201


@app.route('/designs', methods=['GET'])
def list_designs():
    user = get_user_from_session()
    if user:
        query = Design.query.filter_by(user_id=user.id)
    else:
        sid = get_cart_session_id()
        if not sid:
            return jsonify([])
        query = Design.query.filter_by(session_id=sid, user_id=None)
    return jsonify([d.to_dict() for d in query.order_by(Design.updated_at.desc()).all()])


@app.route('/designs/<design_id>', methods=['GET'])
def get_design(design_id):
    design = db.session.get(Design, design_id)
    if not design or not design_owned_by_caller(design):
        raise NotFoundError('Design not found')
    return jsonify(design.to_dict())


@app.route('/designs/<design_id>', methods=['PUT', 'PATCH'])
def update_design(design_id):
    design = db.session.get(Design, design_id)
    if not design or not design_owned_by_caller(design):
        raise NotFoundError('Design not found')
    data = json_body()
    if 'name' in data:
        design.name = str(data['name'] or '').strip() or design.name
    if 'canvasJson' in data:
        design.canvas_json = data['canvasJson']
    if 'previewUrl' in data:
        design.preview_url = data['previewUrl']
    db.session.commit()
    return jsonify(design.to_dict())


# ---------- CART ----------

@app.route('/cart', methods=['GET'])
def get_cart():
    return jsonify(cart_summary(find_cart()))


@app.route('/cart/add', methods=['POST'])
def add_to_cart():
    data = json_body()
    product = find_product(str(data.get('productId') or ''))
    quantity = pricing.check_quantity(data.get('quantity', 1))

    design_id = data.get('designId') or None
    if design_id:
        design = db.session.get(Design, design_id)
        if not design or not design_owned_by_caller(design):
            raise NotFoundError('Design not found')

    quote = quote_product(product, quantity, data.get('selectedOptions'))
    cart = get_or_create_cart()

    existing = None
    for item in cart.items:
        if (item.product_id == product.id and item.design_id == design_id
                and (item.selected_options or {}) == quote['selectedOptions']):
            existing = item
            break

    if existing:
        quote = quote_product(product, existing.quantity + quantity, quote['selectedOptions'])
        existing.quantity = quote['quantity']
        existing.unit_price = quote['unitPrice']
    else:
        cart.items.append(CartItem(
            product_id=product.id,
            design_id=design_id,
            quantity=quantity,
            selected_options=quote['selectedOptions'],
            unit_price=quote['unitPrice'],
        ))

    user = get_user_from_session()
    log_action('add_to_cart', user.id if user else None, {'productId': product.id, 'quantity': quantity})
    db.session.commit()
    return jsonify({'message': 'Added to cart', 'cart': cart_summary(cart)})


def _cart_item(item_id):
    cart = find_cart()
    item = db.session.get(CartItem, item_id)
    if not cart or not item or item.cart_id != cart.id:
        raise NotFoundError('Cart item not found')
    return cart, item


@app.route('/cart/items/<item_id>', methods=['PATCH', 'PUT'])
def update_cart_item(item_id):
    cart, item = _cart_item(item_id)
    data = json_body()
    quantity = pricing.check_quantity(data.get('quantity'))
    quote = quote_product(item.product, quantity, item.selected_options)
    item.quantity = quantity
    item.unit_price = quote['unitPrice']
    db.session.commit()
    return jsonify(cart_summary(cart))


@app.route('/cart/items/<item_id>', methods=['DELETE'])
def remove_cart_item(item_id):
    cart, item = _cart_item(item_id)
    cart.items.remove(item)
    db.session.commit()
    return jsonify(cart_summary(cart))


# ---------- CHECKOUT ----------

@app.route('/checkout/shipping-quote', methods=['POST'])
def shipping_quote():
    data = json_body(required=False)
    address = data.get('shippingAddress') or {}
    if not isinstance(address, dict):
        raise ValidationError('shippingAddress must be an object')

    cart = find_cart()
    if not cart or not cart.items:
        return jsonify({'shippingCost': '0.00', 'locationMultiplier': 1.0, 'reason': 'no-cart'})

    settings = shipping.read_shipping_settings(app.config['SHIPPING_SETTINGS_PATH'])
    quote = shipping.compute_shipping_quote(cart_shipping_items(cart), address, settings)
    return jsonify({
        'shippingCost': money(quote['shippingCost']),
        'locationMultiplier': float(quote['locationMultiplier']),
    })


@app.route('/checkout/promotion', methods=['POST'])
def preview_promotion():
    data = json_body()
    cart = find_cart()
    if not cart or not cart.items:
        raise ValidationError('Cart is empty')
    subtotal = sum((i.line_total() for i in cart.items), Decimal('0'))
    promo, discount = promotion_for_cart(data.get('code'), subtotal, get_user_from_session())
    return jsonify({
        'valid': True,
        'code': promo.code,
        'discountType': promo.discount_type,
        'discountAmount': money(discount),
        'subtotal': money(subtotal),
    })


@app.route('/checkout', methods=['POST'])
@require_user
def checkout():
    user = g.user
    data = json_body()

    address = data.get('shippingAddress')
    if not isinstance(address, dict):
        raise ValidationError('Shipping address with state and zip is required')
    for field in ('state', 'zip'):
        if not str(address.get(field) or '').strip():
            raise ValidationError('Shipping address with state and zip is required')

    email = str(data.get('email') or user.email).strip().lower()
    if not validate_email(email):
        raise ValidationError('Invalid email format')

    cart = find_cart()
    if not cart or not cart.items:
        raise ValidationError('Cart is empty')

    subtotal = sum((i.line_total() for i in cart.items), Decimal('0'))
    settings = shipping.read_shipping_settings(app.config['SHIPPING_SETTINGS_PATH'])
    ship = shipping.compute_shipping_quote(cart_shipping_items(cart), address, settings)

    promo = None
    discount = Decimal('0')
    if data.get('promotionCode'):
        promo, discount = promotion_for_cart(data['promotionCode'], subtotal, user)

    totals = pricing.order_totals(subtotal, ship['shippingCost'], discount, app.config['TAX_RATE'])

    order = Order(
        order_number=generate_order_number(),
        user_id=user.id,
        customer_email=email,
        status='pending',
        shipping_address=address,
        subtotal=totals['subtotal'],
        shipping_cost=totals['shipping'],
        tax_amount=totals['tax'],
        discount_amount=totals['discount'],
        total_amount=totals['total'],
        promotion_code=promo.code if promo else None,
        notes=data.get('notes'),
    )
    for item in cart.items:
        order.items.append(OrderItem(
            product_id=item.product_id,
            design_id=item.design_id,
            product_name=item.product.name,
            quantity=item.quantity,
            selected_options=item.selected_options,
            unit_price=item.unit_price,
            line_total=item.line_total(),
        ))
        if item.design_id:
            design = db.session.get(Design, item.design_id)
            if design and design.user_id is None:
                design.user_id = user.id
            if design and not design.origin:
                design.origin = lifecycle.CUSTOMER_UPLOAD
    order.artwork_status = lifecycle.initial_artwork_status(order.items)
    db.session.add(order)
    db.session.flush()

    if promo:
        claim_promotion_use(promo)
        db.session.add(PromotionRedemption(promotion_id=promo.id, user_id=user.id, order_id=order.id))

    cart.items.clear()

    context = lifecycle.order_context(order)
    outbox.email('order_received', order.customer_email, context)
    outbox.email('new_order', outbox.ADMINS, context)
    outbox.notify(outbox.ADMINS, 'new_order', 'New Order',
                  f'New order #{order.order_number} ({money(order.total_amount)})',
                  order_id=order.id, link_url=f'/admin/orders/{order.id}')

    log_action('checkout', user.id, {'orderId': order.id, 'total': money(order.total_amount)})
    db.session.commit()
    return jsonify(order.to_dict()), 201


# ---------- WEBHOOK ENDPOINTS ----------

@app.route('/webhook/payment', methods=['POST'])
def webhook_payment():
    secret = app.config.get('PAYMENT_WEBHOOK_SECRET')
    given = request.headers.get('X-Webhook-Secret', '')
    if not secret or not hmac.compare_digest(given.encode(), secret.encode()):
        raise AuthError('Invalid webhook signature')

    data = json_body()
    order = Order.query.filter_by(order_number=data.get('orderNumber')).first()
    if not order:
        raise NotFoundError('Order not found')

    updated = False
    if data.get('status') == 'completed':
        updated = lifecycle.confirm_payment(order, data.get('transactionId'))

    log_action('webhook_payment', data={'orderId': order.id, 'status': data.get('status'), 'updated': updated})
    db.session.commit()
    return jsonify({'received': True, 'updated': updated})


# ---------- ORDERS ----------

@app.route('/orders', methods=['GET'])
@require_user
def list_orders():
    orders = Order.query.filter_by(user_id=g.user.id).order_by(Order.created_at.desc()).all()
    return jsonify([o.to_dict(with_items=False) for o in orders])


@app.route('/orders/<order_id>', methods=['GET'])
@require_user
def get_order(order_id):
    return jsonify(load_own_order(order_id).to_dict())


@app.route('/orders/<order_id>/artwork/upload', methods=['POST'])
@require_user
def customer_upload_artwork(order_id):
    order = lifecycle.load_order(order_id)
    data = json_body()
    design = lifecycle.upload_artwork(order, g.user, data.get('designId'), data.get('orderItemId'))
    log_action('artwork_uploaded', g.user.id, {'orderId': order.id, 'designId': design.id})
    db.session.commit()
    return jsonify({'success': True, 'order': order.to_dict()})


@app.route('/orders/<order_id>/artwork/approve', methods=['POST'])
@require_user
def customer_approve_artwork(order_id):
    order = lifecycle.load_order(order_id)
    lifecycle.approve_artwork(order, g.user)
    log_action('artwork_approved', g.user.id, {'orderId': order.id})
    db.session.commit()
    return jsonify({'success': True, 'artworkStatus': order.artwork_status, 'order': order.to_dict()})


@app.route('/orders/<order_id>/artwork/revision', methods=['POST'])
@require_user
def customer_request_revision(order_id):
    order = lifecycle.load_order(order_id)
    data = json_body(required=False)
    lifecycle.request_revision(order, g.user, data.get('notes'))
    log_action('artwork_revision_requested', g.user.id, {'orderId': order.id})
    db.session.commit()
    return jsonify({'success': True, 'artworkStatus': order.artwork_status, 'order': order.to_dict()})


# ---------- NOTIFICATIONS ----------

@app.route('/notifications', methods=['GET'])
@require_user
def list_notifications():
    query = Notification.query.filter_by(user_id=g.user.id)
    if parse_bool(request.args.get('unread', '')):
        query = query.filter(Notification.is_read.is_(False))
    rows = query.order_by(Notification.created_at.desc()).limit(100).all()
    return jsonify([n.to_dict() for n in rows])


@app.route('/notifications/<notification_id>/read', methods=['POST'])
@require_user
def mark_notification_read(notification_id):
    note = db.session.get(Notification, notification_id)
    if not note or note.user_id != g.user.id:
        raise NotFoundError('Notification not found')
    note.is_read = True
    db.session.commit()
    return jsonify(note.to_dict())


# ---------- DEALS ----------

@app.route('/deals', methods=['GET'])
def list_deals():
    deals = live_deals_query().order_by(Deal.display_order, Deal.created_at).all()
    return jsonify([d.to_dict() for d in deals])


@app.route('/deals/homepage', methods=['GET'])
def homepage_deals():
    deals = (
        live_deals_query()
        .filter(Deal.show_on_homepage.is_(True))
        .order_by(Deal.display_order, Deal.created_at)
        .all()
    )
    return jsonify([d.to_dict() for d in deals])


# ---------- SETTINGS ----------

@app.route('/settings/shipping', methods=['GET'])
def get_shipping_settings():
    return jsonify(shipping.read_shipping_settings(app.config['SHIPPING_SETTINGS_PATH']))


# ---------- ADMIN: CATALOG ----------

@app.route('/admin/categories', methods=['POST'])
@require_admin
def admin_create_category():
    data = json_body()
    name = str(data.get('name') or '').strip()
    if not name:
        raise ValidationError('name is required')
    slug = slugify(data.get('slug') or name)
    if Category.query.filter_by(slug=slug).first():
        raise ValidationError('A category with this slug already exists')
    category = Category(name=name, slug=slug)
    db.session.add(category)
    log_action('admin_create_category', g.user.id, {'slug': slug})
    db.session.commit()
    return jsonify(category.to_dict()), 201


@app.route('/admin/categories/<category_id>', methods=['DELETE'])
@require_admin
def admin_delete_category(category_id):
    category = db.session.get(Category, category_id)
    if not category:
        raise NotFoundError('Category not found')
    Product.query.filter_by(category_id=category.id).update({Product.category_id: None})
    db.session.delete(category)
    log_action('admin_delete_category', g.user.id, {'categoryId': category_id})
    db.session.commit()
    return jsonify({'success': True})


@app.route('/admin/products', methods=['GET'])
@require_admin
def admin_list_products():
    query = Product.query
    if request.args.get('categoryId'):
        query = query.filter_by(category_id=request.args['categoryId'])
    return jsonify([p.to_dict(detail=True) for p in query.order_by(Product.name).all()])


@app.route('/admin/products', methods=['POST'])
@require_admin
def admin_create_product():
    data = json_body()
    if 'name' not in data or 'basePrice' not in data:
        raise ValidationError('name and basePrice are required')
    product = Product()
    apply_product_fields(product, data)
    db.session.add(product)
    db.session.flush()
    log_action('admin_create_product', g.user.id, {'productId': product.id})
    db.session.commit()
    return jsonify(product.to_dict(detail=True)), 201


@app.route('/admin/products/<product_id>', methods=['PATCH', 'PUT'])
@require_admin
def admin_update_product(product_id):
    product = find_product(product_id, active_only=False)
    data = json_body()
    apply_product_fields(product, data)
    log_action('admin_update_product', g.user.id, {'productId': product.id, 'fields': sorted(data)})
    db.session.commit()
    return jsonify(product.to_dict(detail=True))


@app.route('/admin/products/<product_id>', methods=['DELETE'])
@require_admin
def admin_delete_product(product_id):
    product = find_product(product_id, active_only=False)
    db.session.delete(product)
    log_action('admin_delete_product', g.user.id, {'productId': product_id})
    db.session.commit()
    return jsonify({'success': True})


@app.route('/admin/products/<product_id>/options', methods=['PUT'])
@require_admin
def admin_replace_options(product_id):
    product = find_product(product_id, active_only=False)
    data = json_body()
    raw = data.get('options')
    if not isinstance(raw, list):
        raise ValidationError('options must be an array')

    options = []
    defaults = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError('Each option must be an object')
        option_type = entry.get('optionType')
        if option_type not in pricing.OPTION_TYPES:
            raise ValidationError(f"optionType must be one of: {', '.join(pricing.OPTION_TYPES)}")
        name = str(entry.get('name') or '').strip()
        if not name:
            raise ValidationError('Option name is required')
        is_default = parse_bool(entry.get('isDefault', False))
        if is_default:
            if option_type in defaults:
                raise ValidationError(f'Only one default {option_type} option is allowed')
            defaults.add(option_type)
        options.append(ProductOption(
            option_type=option_type,
            name=name,
            price_modifier=pricing.round_price(pricing.to_decimal(entry.get('priceModifier', 0), 'priceModifier')),
            is_default=is_default,
            is_active=parse_bool(entry.get('isActive', True)),
        ))

    product.options = options
    log_action('admin_replace_options', g.user.id, {'productId': product.id, 'count': len(options)})
    db.session.commit()
    return jsonify([o.to_dict() for o in product.options])


@app.route('/admin/products/<product_id>/pricing-tiers', methods=['GET'])
@require_admin
def admin_get_product_tiers(product_id):
    product = find_product(product_id, active_only=False)
    return jsonify([t.to_dict() for t in product.tiers])


@app.route('/admin/products/<product_id>/pricing-tiers', methods=['PUT'])
@require_admin
def admin_replace_product_tiers(product_id):
    product = find_product(product_id, active_only=False)
    data = json_body()
    tiers = replace_tiers(product.id, data.get('tiers'))
    log_action('admin_replace_tiers', g.user.id, {'productId': product.id, 'count': len(tiers)})
    db.session.commit()
    return jsonify({'success': True, 'tiers': tiers})


@app.route('/admin/pricing/global-tiers', methods=['GET'])
@require_admin
def admin_get_global_tiers():
    return jsonify([t.to_dict() for t in global_tiers()])


@app.route('/admin/pricing/global-tiers', methods=['PUT'])
@require_admin
def admin_replace_global_tiers():
    data = json_body()
    tiers = replace_tiers(None, data.get('tiers'))
    log_action('admin_replace_global_tiers', g.user.id, {'count': len(tiers)})
    db.session.commit()
    return jsonify({'success': True, 'tiers': tiers})


@app.route('/admin/products/bulk-adjust', methods=['POST'])
@require_admin
def admin_bulk_adjust():
    data = json_body()
    adjustment_type = data.get('adjustmentType')
    value = data.get('adjustmentValue')
    if not adjustment_type or value is None:
        raise ValidationError('adjustmentType and adjustmentValue are required')
    if adjustment_type not in pricing.ADJUSTMENT_TYPES:
        raise ValidationError('adjustmentType must be percentage or flat')
    value = pricing.to_decimal(value, 'adjustmentValue')

    query = Product.query
    if data.get('categoryId'):
        query = query.filter_by(category_id=data['categoryId'])
    products = query.order_by(Product.name).all()
    preview = parse_bool(data.get('preview', False))

    changes = []
    for product in products:
        new_price = pricing.adjust_price(product.base_price, adjustment_type, value)
        changes.append({
            'id': product.id,
            'name': product.name,
            'oldPrice': money(product.base_price, '0.0001'),
            'newPrice': money(new_price, '0.0001'),
        })
        if not preview:
            product.base_price = new_price

    if preview:
        return jsonify({'products': changes})

    # one commit for the whole batch
    log_action('admin_bulk_adjust', g.user.id, {
        'adjustmentType': adjustment_type,
        'adjustmentValue': str(value),
        'categoryId': data.get('categoryId'),
        'count': len(changes),
    })
    db.session.commit()
    return jsonify({'success': True, 'updatedCount': len(changes), 'products': changes})


# ---------- ADMIN: ORDERS ----------

@app.route('/admin/orders', methods=['GET'])
@require_admin
def admin_list_orders():
    page, per_page = paginate_args()
    query = Order.query
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    if request.args.get('artworkStatus'):
        query = query.filter_by(artwork_status=request.args['artworkStatus'])

    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return jsonify({
        'orders': [o.to_dict(with_items=False) for o in orders],
        'total': total,
        'page': page,
        'perPage': per_page,
    })


@app.route('/admin/orders/<order_id>', methods=['GET'])
@require_admin
def admin_get_order(order_id):
    return jsonify(lifecycle.load_order(order_id).to_dict())


@app.route('/admin/orders/<order_id>/status', methods=['PATCH'])
@require_admin
def admin_update_order_status(order_id):
    data = json_body()
    new_status = data.get('status')
    if new_status not in lifecycle.ORDER_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(lifecycle.ORDER_STATUSES)}")

    order = lifecycle.load_order(order_id)
    old_status, new_status = lifecycle.update_order_status(
        order, new_status,
        expected_version=expected_version(data),
        tracking_number=data.get('trackingNumber'),
        tracking_carrier=data.get('trackingCarrier'),
    )
    log_action('admin_update_status', g.user.id, {'orderId': order.id, 'old': old_status, 'new': new_status})
    db.session.commit()

    return jsonify({
        'success': True,
        'orderId': order.id,
        'oldStatus': old_status,
        'newStatus': new_status,
        'version': order.version,
        'message': f'Order status updated from {old_status} to {new_status}',
    })


@app.route('/admin/orders/<order_id>/artwork', methods=['PATCH'])
@require_admin
def admin_update_artwork(order_id):
    data = json_body()
    order = lifecycle.load_order(order_id)
    kwargs = {
        'artwork_status': data.get('artworkStatus'),
        'notes': data.get('artworkNotes'),
        'expected_version': expected_version(data),
        'author': f'Admin ({g.user.email})',
    }
    if 'adminDesignId' in data:
        kwargs['admin_design_id'] = data['adminDesignId']
    old_status, new_status = lifecycle.admin_update_artwork(order, **kwargs)
    log_action('admin_update_artwork', g.user.id, {'orderId': order.id, 'old': old_status, 'new': new_status})
    db.session.commit()
    return jsonify({
        'success': True,
        'orderId': order.id,
        'oldArtworkStatus': old_status,
        'artworkStatus': new_status,
        'order': order.to_dict(),
    })


@app.route('/admin/orders/<order_id>/artwork/upload', methods=['POST'])
@require_admin
def admin_upload_artwork(order_id):
    data = json_body()
    order = lifecycle.load_order(order_id)
    design = lifecycle.admin_upload_design(order, data.get('designId'), data.get('notes'), data.get('orderItemId'))
    log_action('admin_upload_design', g.user.id, {'orderId': order.id, 'designId': design.id})
    db.session.commit()
    return jsonify({'success': True, 'design': design.to_dict(), 'order': order.to_dict()})


@app.route('/admin/orders/<order_id>/artwork/review', methods=['POST'])
@require_admin
def admin_review_artwork(order_id):
    data = json_body()
    order = lifecycle.load_order(order_id)
    design = lifecycle.review_design(order, data.get('action'), data.get('orderItemId'), data.get('notes'))
    log_action('admin_review_design', g.user.id, {'orderId': order.id, 'designId': design.id,
                                                  'action': data.get('action')})
    db.session.commit()
    return jsonify({'success': True, 'design': design.to_dict(), 'order': order.to_dict()})


@app.route('/admin/orders/<order_id>/artwork/restore', methods=['POST'])
@require_admin
def admin_restore_artwork(order_id):
    order = lifecycle.load_order(order_id)
    lifecycle.restore_original_artwork(order)
    log_action('admin_restore_artwork', g.user.id, {'orderId': order.id})
    db.session.commit()
    return jsonify({'success': True, 'order': order.to_dict()})


@app.route('/admin/orders/<order_id>/flag-issue', methods=['POST'])
@require_admin
def admin_flag_issue(order_id):
    data = json_body(required=False)
    order = lifecycle.load_order(order_id)
    designs = lifecycle.flag_issue(order, data.get('notes'))
    log_action('admin_flag_issue', g.user.id, {'orderId': order.id, 'designs': [d.id for d in designs]})
    db.session.commit()
    return jsonify({'success': True, 'flaggedDesigns': len(designs), 'order': order.to_dict()})


# ---------- ADMIN: PROMOTIONS / DEALS ----------

@app.route('/admin/promotions', methods=['GET'])
@require_admin
def admin_list_promotions():
    return jsonify([p.to_dict() for p in Promotion.query.order_by(Promotion.created_at.desc()).all()])


@app.route('/admin/promotions', methods=['POST'])
@require_admin
def admin_create_promotion():
    data = json_body()
    for key in ('code', 'discountType', 'discountValue'):
        if data.get(key) in (None, ''):
            raise ValidationError('code, discountType and discountValue are required')
    promo = Promotion(uses_count=0)
    apply_promotion_fields(promo, data)
    db.session.add(promo)
    log_action('admin_create_promotion', g.user.id, {'code': promo.code})
    db.session.commit()
    return jsonify(promo.to_dict()), 201


@app.route('/admin/promotions/<promotion_id>', methods=['PATCH', 'PUT'])
@require_admin
def admin_update_promotion(promotion_id):
    promo = db.session.get(Promotion, promotion_id)
    if not promo:
        raise NotFoundError('Promotion not found')
    apply_promotion_fields(promo, json_body())
    log_action('admin_update_promotion', g.user.id, {'code': promo.code})
    db.session.commit()
    return jsonify(promo.to_dict())


@app.route('/admin/promotions/<promotion_id>', methods=['DELETE'])
@require_admin
def admin_delete_promotion(promotion_id):
    promo = db.session.get(Promotion, promotion_id)
    if not promo:
        raise NotFoundError('Promotion not found')
    db.session.delete(promo)
    log_action('admin_delete_promotion', g.user.id, {'code': promo.code})
    db.session.commit()
    return jsonify({'success': True})


@app.route('/admin/deals', methods=['GET'])
@require_admin
def admin_list_deals():
    return jsonify([d.to_dict() for d in Deal.query.order_by(Deal.display_order, Deal.created_at).all()])


@app.route('/admin/deals', methods=['POST'])
@require_admin
def admin_create_deal():
    data = json_body()
    deal = Deal()
    if not data.get('title'):
        raise ValidationError('title is required')
    apply_deal_fields(deal, data)
    db.session.add(deal)
    db.session.flush()
    log_action('admin_create_deal', g.user.id, {'dealId': deal.id})
    db.session.commit()
    return jsonify(deal.to_dict()), 201


@app.route('/admin/deals/<deal_id>', methods=['PATCH', 'PUT'])
@require_admin
def admin_update_deal(deal_id):
    deal = db.session.get(Deal, deal_id)
    if not deal:
        raise NotFoundError('Deal not found')
    apply_deal_fields(deal, json_body())
    log_action('admin_update_deal', g.user.id, {'dealId': deal.id})
    db.session.commit()
    return jsonify(deal.to_dict())


@app.route('/admin/deals/<deal_id>', methods=['DELETE'])
@require_admin
def admin_delete_deal(deal_id):
    deal = db.session.get(Deal, deal_id)
    if not deal:
        raise NotFoundError('Deal not found')
    db.session.delete(deal)
    log_action('admin_delete_deal', g.user.id, {'dealId': deal_id})
    db.session.commit()
    return jsonify({'success': True})


# ---------- ADMIN: SETTINGS ----------

@app.route('/admin/settings/shipping', methods=['POST', 'PUT'])
@require_admin
def admin_save_shipping_settings():
    data = json_body()
    try:
        settings = shipping.write_shipping_settings(app.config['SHIPPING_SETTINGS_PATH'], data)
    except OSError as e:
        raise DependencyFailure(f'could not write shipping settings: {e}')
    log_action('admin_shipping_settings', g.user.id, settings)
    db.session.commit()
    return jsonify({'success': True, 'settings': settings})


@app.route('/admin/settings/emails', methods=['GET'])
@require_admin
def admin_list_email_templates():
    return jsonify(emails.list_templates())


@app.route('/admin/settings/emails/<key>', methods=['PUT'])
@require_admin
def admin_save_email_template(key):
    data = json_body()
    emails.save_template(key, data.get('subject'), data.get('body'))
    log_action('admin_email_template', g.user.id, {'key': key})
    db.session.commit()
    return jsonify(emails.get_template(key))


# ---------- ADMIN: USERS / LOGS / OUTBOX ----------

@app.route('/admin/users', methods=['GET'])
@require_admin
def admin_list_users():
    page, per_page = paginate_args()
    query = User.query
    search = request.args.get('search')
    if search:
        like = f'%{search.lower()}%'
        query = query.filter(or_(User.email.ilike(like), User.name.ilike(like)))
    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return jsonify({'users': [u.to_dict() for u in users], 'total': total, 'page': page, 'perPage': per_page})


@app.route('/admin/users/<user_id>', methods=['PATCH'])
@require_admin
def admin_update_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError('User not found')
    data = json_body()
    if 'isAdmin' in data:
        make_admin = parse_bool(data['isAdmin'])
        if user.id == g.user.id and not make_admin:
            raise ValidationError('You cannot remove your own admin access')
        user.is_admin = make_admin
    log_action('admin_update_user', g.user.id, {'userId': user.id, 'isAdmin': user.is_admin})
    db.session.commit()
    return jsonify(user.to_dict())


@app.route('/admin/logs', methods=['GET'])
@require_admin
def admin_list_logs():
    limit = min(max(request.args.get('limit', 100, type=int) or 100, 1), 500)
    offset = max(request.args.get('offset', 0, type=int) or 0, 0)
    query = ActivityLog.query
    if request.args.get('action'):
        query = query.filter_by(action=request.args['action'])
    total = query.count()
    rows = query.order_by(ActivityLog.ts.desc(), ActivityLog.id.desc()).offset(offset).limit(limit).all()
    return jsonify({'logs': [r.to_dict() for r in rows], 'total': total})


@app.route('/admin/outbox', methods=['GET'])
@require_admin
def admin_list_outbox():
    query = OutboxEvent.query
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'])
    rows = query.order_by(OutboxEvent.created_at.desc()).limit(200).all()
    return jsonify([e.to_dict() for e in rows])


@app.route('/admin/outbox/<event_id>/retry', methods=['POST'])
@require_admin
def admin_retry_outbox(event_id):
    event = db.session.get(OutboxEvent, event_id)
    if not event:
        raise NotFoundError('Outbox event not found')
    if event.status == 'sent':
        raise ValidationError('Event was already sent')
    outbox.retry(event)
    log_action('admin_retry_outbox', g.user.id, {'eventId': event.id})
    db.session.commit()
    outbox.dispatch_pending(ids=[event.id])
    return jsonify(db.session.get(OutboxEvent, event_id).to_dict())


# ============== REQUEST HOOKS ==============

@app.before_request
def reset_request_state():
    # g outlives the request when an app context is already pushed
    for key in ('user', 'new_cart_session', 'outbox_ids'):
        g.pop(key, None)


@app.after_request
def after_request(response):
    sid = g.pop('new_cart_session', None)
    if sid:
        response.set_cookie(
            app.config['CART_COOKIE_NAME'], sid,
            max_age=app.config['CART_COOKIE_MAX_AGE'],
            httponly=True, samesite='Lax', path='/',
        )
    ids = outbox.take_request_ids()
    if ids and response.status_code < 400:
        outbox.dispatch_pending(ids=ids)
    return response


# ============== ERROR HANDLERS ==============

@app.errorhandler(AppError)
def handle_app_error(e):
    db.session.rollback()
    if isinstance(e, DependencyFailure):
        logger.error("dependency failure on %s: %s", request.path, e.detail)
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(HTTPException)
def handle_http_error(e):
    if e.code == 404:
        return jsonify({'error': 'Endpoint not found'}), 404
    return jsonify({'error': e.description}), e.code


@app.errorhandler(Exception)
def handle_exception(e):
    db.session.rollback()
    logger.exception("unhandled error on %s %s", request.method, request.path)
    try:
        log_action('server_error', data={'error': str(e)[:500], 'type': type(e).__name__})
        db.session.commit()
    except Exception:
        logger.exception("could not record server_error")
        db.session.rollback()
    return jsonify({'error': 'An unexpected error occurred'}), 500


# ============== CLI ==============

@app.cli.command('init-db')
@click.option('--seed', is_flag=True, help='Load the demo catalog.')
def init_db_command(seed):
    """create tables (and optionally demo data)"""
    db.create_all()
    if seed and not Product.query.first():
        seed_demo_catalog()
        click.echo('Seeded demo catalog')
    click.echo('Database ready')


@app.cli.command('drain-outbox')
def drain_outbox_command():
    """send pending notifications and emails, run it from cron"""
    sent, failed = outbox.dispatch_pending()
    click.echo(f'sent={sent} failed={failed}')


# ============== STARTUP ==============

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    app.run(host='0.0.0.0', port=5001)
