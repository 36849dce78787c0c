import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


# ============== HELPERS ==============

def gen_id(prefix):
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def money(value, places='0.01'):
    """decimal string for the wire, None stays None"""
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def iso(dt):
    return dt.isoformat() if dt else None


# ============== USERS / SESSIONS ==============

class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('usr'))
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(150))
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    last_login = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'isAdmin': self.is_admin,
            'createdAt': iso(self.created_at),
            'lastLogin': iso(self.last_login),
        }


class AuthSession(db.Model):
    __tablename__ = 'auth_sessions'

    token = db.Column(db.String(64), primary_key=True)
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    ip = db.Column(db.String(64))
    user_agent = db.Column(db.String(200))

    user = db.relationship('User')


# ============== CATALOG ==============

class Category(db.Model):
    __tablename__ = 'categories'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('cat'))
    name = db.Column(db.String(150), nullable=False)
    slug = db.Column(db.String(150), unique=True, nullable=False)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'slug': self.slug}


class Product(db.Model):
    __tablename__ = 'products'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('prod'))
    category_id = db.Column(db.String(32), db.ForeignKey('categories.id', ondelete='SET NULL'))
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text)
    base_price = db.Column(db.Numeric(12, 4), nullable=False, default=Decimal('0'))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    # free | flat | calculated
    shipping_type = db.Column(db.String(20), nullable=False, default='calculated')
    flat_shipping_price = db.Column(db.Numeric(10, 2))
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    category = db.relationship('Category')
    options = db.relationship('ProductOption', backref='product', lazy=True,
                              cascade='all, delete-orphan', order_by='ProductOption.option_type')
    tiers = db.relationship('PricingTier', backref='product', lazy=True,
                            cascade='all, delete-orphan', order_by='PricingTier.min_quantity')
    # deleted through the orm, sqlite does not enforce ON DELETE here
    cart_items = db.relationship('CartItem', back_populates='product', lazy=True, cascade='all')

    def to_dict(self, detail=False):
        out = {
            'id': self.id,
            'categoryId': self.category_id,
            'name': self.name,
            'slug': self.slug,
            'description': self.description,
            'basePrice': money(self.base_price, '0.0001'),
            'isActive': self.is_active,
            'isFeatured': self.is_featured,
            'shippingType': self.shipping_type,
            'flatShippingPrice': money(self.flat_shipping_price),
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }
        if detail:
            out['options'] = [o.to_dict() for o in self.options if o.is_active]
            out['pricingTiers'] = [t.to_dict() for t in self.tiers]
        return out


class PricingTier(db.Model):
    __tablename__ = 'pricing_tiers'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('tier'))
    # null product_id means the tier belongs to the global set
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='CASCADE'))
    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer)
    price_per_unit = db.Column(db.Numeric(12, 4), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'productId': self.product_id,
            'minQuantity': self.min_quantity,
            'maxQuantity': self.max_quantity,
            'pricePerUnit': money(self.price_per_unit, '0.0001'),
        }

    def as_tier(self):
        return {'min': self.min_quantity, 'max': self.max_quantity, 'price': self.price_per_unit}


class ProductOption(db.Model):
    __tablename__ = 'product_options'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('opt'))
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    # material | coating | cut
    option_type = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    price_modifier = db.Column(db.Numeric(10, 4), nullable=False, default=Decimal('0'))
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            'id': self.id,
            'optionType': self.option_type,
            'name': self.name,
            'priceModifier': money(self.price_modifier, '0.0001'),
            'isDefault': self.is_default,
            'isActive': self.is_active,
        }


# ============== DESIGNS ==============

class Design(db.Model):
    __tablename__ = 'designs'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('dsn'))
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='SET NULL'))
    session_id = db.Column(db.String(64))
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='SET NULL'))
    name = db.Column(db.String(200), nullable=False, default='Untitled design')
    canvas_json = db.Column(db.JSON)
    preview_url = db.Column(db.String(500))
    # customer_upload | admin_design
    origin = db.Column(db.String(20))
    # flagged | approved
    review_tag = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'productId': self.product_id,
            'name': self.name,
            'canvasJson': self.canvas_json,
            'previewUrl': self.preview_url,
            'origin': self.origin,
            'reviewTag': self.review_tag,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }


# ============== CART ==============

class Cart(db.Model):
    __tablename__ = 'carts'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('cart'))
    session_id = db.Column(db.String(64), index=True)
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='CASCADE'), index=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    items = db.relationship('CartItem', backref='cart', lazy=True,
                            cascade='all, delete-orphan', order_by='CartItem.created_at')


class CartItem(db.Model):
    __tablename__ = 'cart_items'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('ci'))
    cart_id = db.Column(db.String(32), db.ForeignKey('carts.id', ondelete='CASCADE'), nullable=False)
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    design_id = db.Column(db.String(32), db.ForeignKey('designs.id', ondelete='SET NULL'))
    quantity = db.Column(db.Integer, nullable=False)
    selected_options = db.Column(db.JSON)
    unit_price = db.Column(db.Numeric(12, 4), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    product = db.relationship('Product', back_populates='cart_items')

    def line_total(self):
        return (Decimal(str(self.unit_price)) * self.quantity).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    def to_dict(self):
        return {
            'id': self.id,
            'productId': self.product_id,
            'productName': self.product.name if self.product else None,
            'designId': self.design_id,
            'quantity': self.quantity,
            'selectedOptions': self.selected_options or {},
            'unitPrice': money(self.unit_price, '0.0001'),
            'lineTotal': money(self.line_total()),
        }


# ============== ORDERS ==============

class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('ord'))
    order_number = db.Column(db.String(40), unique=True, nullable=False)
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='SET NULL'))
    customer_email = db.Column(db.String(255))
    status = db.Column(db.String(30), nullable=False, default='pending')
    artwork_status = db.Column(db.String(30), nullable=False, default='awaiting_artwork')
    artwork_notes = db.Column(db.Text)
    admin_design_id = db.Column(db.String(32), db.ForeignKey('designs.id', ondelete='SET NULL'))
    artwork_approved_at = db.Column(db.DateTime)
    shipping_address = db.Column(db.JSON)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    shipping_cost = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0'))
    promotion_code = db.Column(db.String(50))
    payment_reference = db.Column(db.String(100))
    tracking_number = db.Column(db.String(100))
    tracking_carrier = db.Column(db.String(50))
    notes = db.Column(db.Text)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    user = db.relationship('User')
    items = db.relationship('OrderItem', backref='order', lazy=True, cascade='all, delete-orphan')

    def to_dict(self, with_items=True):
        out = {
            'id': self.id,
            'orderNumber': self.order_number,
            'userId': self.user_id,
            'customerEmail': self.customer_email,
            'status': self.status,
            'artworkStatus': self.artwork_status,
            'artworkNotes': self.artwork_notes,
            'adminDesignId': self.admin_design_id,
            'artworkApprovedAt': iso(self.artwork_approved_at),
            'shippingAddress': self.shipping_address,
            'subtotal': money(self.subtotal),
            'shippingCost': money(self.shipping_cost),
            'taxAmount': money(self.tax_amount),
            'discountAmount': money(self.discount_amount),
            'totalAmount': money(self.total_amount),
            'promotionCode': self.promotion_code,
            'paymentReference': self.payment_reference,
            'trackingNumber': self.tracking_number,
            'trackingCarrier': self.tracking_carrier,
            'notes': self.notes,
            'version': self.version,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }
        if with_items:
            out['items'] = [i.to_dict() for i in self.items]
        return out


class OrderItem(db.Model):
    __tablename__ = 'order_items'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('oi'))
    order_id = db.Column(db.String(32), db.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='SET NULL'))
    design_id = db.Column(db.String(32), db.ForeignKey('designs.id', ondelete='SET NULL'))
    product_name = db.Column(db.String(200))
    quantity = db.Column(db.Integer, nullable=False)
    selected_options = db.Column(db.JSON)
    unit_price = db.Column(db.Numeric(12, 4), nullable=False)
    line_total = db.Column(db.Numeric(10, 2), nullable=False)

    design = db.relationship('Design')

    def to_dict(self):
        return {
            'id': self.id,
            'productId': self.product_id,
            'productName': self.product_name,
            'designId': self.design_id,
            'quantity': self.quantity,
            'selectedOptions': self.selected_options or {},
            'unitPrice': money(self.unit_price, '0.0001'),
            'lineTotal': money(self.line_total),
        }


# ============== PROMOTIONS / DEALS ==============

class Promotion(db.Model):
    __tablename__ = 'promotions'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('promo'))
    code = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    # percentage | flat
    discount_type = db.Column(db.String(20), nullable=False)
    discount_value = db.Column(db.Numeric(10, 2), nullable=False)
    min_order_amount = db.Column(db.Numeric(10, 2))
    max_uses = db.Column(db.Integer)
    uses_count = db.Column(db.Integer, nullable=False, default=0)
    uses_per_user = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    starts_at = db.Column(db.DateTime)
    expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'description': self.description,
            'discountType': self.discount_type,
            'discountValue': money(self.discount_value),
            'minOrderAmount': money(self.min_order_amount),
            'maxUses': self.max_uses,
            'usesCount': self.uses_count,
            'usesPerUser': self.uses_per_user,
            'isActive': self.is_active,
            'startsAt': iso(self.starts_at),
            'expiresAt': iso(self.expires_at),
        }


class PromotionRedemption(db.Model):
    __tablename__ = 'promotion_redemptions'

    id = db.Column(db.Integer, primary_key=True)
    promotion_id = db.Column(db.String(32), db.ForeignKey('promotions.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='CASCADE'))
    order_id = db.Column(db.String(32), db.ForeignKey('orders.id', ondelete='CASCADE'))
    created_at = db.Column(db.DateTime, default=datetime.now)


class Deal(db.Model):
    __tablename__ = 'deals'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('deal'))
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    image_url = db.Column(db.String(500))
    product_id = db.Column(db.String(32), db.ForeignKey('products.id', ondelete='SET NULL'))
    original_price = db.Column(db.Numeric(10, 2))
    deal_price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer)
    badge_text = db.Column(db.String(50))
    display_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    show_on_homepage = db.Column(db.Boolean, nullable=False, default=False)
    starts_at = db.Column(db.DateTime)
    ends_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'imageUrl': self.image_url,
            'productId': self.product_id,
            'originalPrice': money(self.original_price),
            'dealPrice': money(self.deal_price),
            'quantity': self.quantity,
            'badgeText': self.badge_text,
            'displayOrder': self.display_order,
            'isActive': self.is_active,
            'showOnHomepage': self.show_on_homepage,
            'startsAt': iso(self.starts_at),
            'endsAt': iso(self.ends_at),
        }


# ============== NOTIFICATIONS / OUTBOX / AUDIT ==============

class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('notif'))
    user_id = db.Column(db.String(32), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200))
    message = db.Column(db.Text)
    order_id = db.Column(db.String(32), db.ForeignKey('orders.id', ondelete='CASCADE'))
    link_url = db.Column(db.String(500))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'orderId': self.order_id,
            'linkUrl': self.link_url,
            'isRead': self.is_read,
            'createdAt': iso(self.created_at),
        }


class OutboxEvent(db.Model):
    __tablename__ = 'outbox_events'

    id = db.Column(db.String(32), primary_key=True, default=lambda: gen_id('evt'))
    # notification | email
    kind = db.Column(db.String(20), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    # pending | sent | failed
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text)
    last_attempt_at = db.Column(db.DateTime)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'payload': self.payload,
            'status': self.status,
            'attempts': self.attempts,
            'lastError': self.last_error,
            'lastAttemptAt': iso(self.last_attempt_at),
            'sentAt': iso(self.sent_at),
            'createdAt': iso(self.created_at),
        }


class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'

    id = db.Column(db.Integer, primary_key=True)
    ts = db.Column(db.DateTime, default=datetime.now, index=True)
    action = db.Column(db.String(80), nullable=False, index=True)
    user_id = db.Column(db.String(32))
    data = db.Column(db.JSON)
    ip = db.Column(db.String(64))
    request_path = db.Column(db.String(255))

    def to_dict(self):
        return {
            'id': self.id,
            'ts': iso(self.ts),
            'action': self.action,
            'userId': self.user_id,
            'data': self.data,
            'ip': self.ip,
            'requestPath': self.request_path,
        }


class EmailTemplate(db.Model):
    __tablename__ = 'email_templates'

    key = db.Column(db.String(50), primary_key=True)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)
