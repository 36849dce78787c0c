"""
Order and artwork lifecycle.

An order moves along two independent tracks: `status` (payment and
fulfilment) and `artwork_status` (design review). The functions here apply a
transition to a loaded Order, queue the side effects in the outbox and leave
the commit to the caller.
"""

from datetime import datetime

from errors import AuthError, ConflictError, NotFoundError, StaleVersionError, ValidationError
from models import Design, Order, OrderItem, db
import outbox

# ---------- ORDER STATUS ----------

ORDER_STATUSES = [
    'pending', 'pending_payment', 'paid', 'in_production',
    'printed', 'shipped', 'delivered', 'cancelled',
]
ORDER_FLOW = ORDER_STATUSES[:-1]
TERMINAL_ORDER_STATUSES = ('delivered', 'cancelled')

# the customer hears about these in-app
NOTIFY_ORDER_STATUSES = {
    'paid': 'Payment received',
    'in_production': 'Your order is in production',
    'printed': 'Your order has been printed',
    'shipped': 'Your order has shipped',
    'delivered': 'Your order was delivered',
    'cancelled': 'Your order was cancelled',
}

# ---------- ARTWORK STATUS ----------

ARTWORK_STATUSES = [
    'awaiting_artwork', 'artwork_uploaded', 'pending_approval',
    'approved', 'revision_requested', 'flagged',
]
ARTWORK_ALIASES = {'needs_revision': 'flagged'}

ARTWORK_TRANSITIONS = {
    'awaiting_artwork': ('artwork_uploaded', 'pending_approval'),
    'artwork_uploaded': ('pending_approval', 'approved', 'flagged'),
    'pending_approval': ('approved', 'revision_requested', 'flagged', 'pending_approval'),
    'revision_requested': ('artwork_uploaded', 'pending_approval', 'flagged'),
    'flagged': ('artwork_uploaded', 'pending_approval', 'approved'),
    'approved': (),
}

CUSTOMER_UPLOAD = 'customer_upload'
ADMIN_DESIGN = 'admin_design'
TAG_FLAGGED = 'flagged'
TAG_APPROVED = 'approved'

NOTE_SEPARATOR = '\n\n---\n'


# ============== HELPERS ==============

def load_order(order_id):
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError('Order not found')
    return order


def check_access(order, user):
    if user is None:
        raise AuthError()
    if not (user.is_admin or order.user_id == user.id):
        raise AuthError('Access denied', forbidden=True)


def check_admin(user):
    if user is None:
        raise AuthError()
    if not user.is_admin:
        raise AuthError('Admin access required', forbidden=True)


def parse_version(value):
    if value in (None, ''):
        return None
    if isinstance(value, str):
        value = value.strip().strip('"').strip()
        if value.startswith('W/'):
            value = value[2:].strip('"')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError('expectedVersion must be an integer')


def check_version(order, expected):
    if expected is not None and order.version != expected:
        raise StaleVersionError(expected, order.version)


def bump_version(order, expected=None):
    """
    Record a write. With an expected version the bump is a conditional
    update, so a concurrent writer that got there first turns this into 409.
    """
    if expected is None:
        order.version = (order.version or 0) + 1
        return
    rows = (
        db.session.query(Order)
        .filter(Order.id == order.id, Order.version == expected)
        .update({Order.version: expected + 1}, synchronize_session=False)
    )
    if rows == 0:
        db.session.rollback()
        current = db.session.get(Order, order.id)
        raise StaleVersionError(expected, current.version if current else None)
    order.version = expected + 1


def append_note(order, author, text, now=None):
    now = now or datetime.now()
    entry = f"{author} ({now.strftime('%Y-%m-%d %H:%M')}):\n{text.strip()}"
    if order.artwork_notes:
        order.artwork_notes = order.artwork_notes + NOTE_SEPARATOR + entry
    else:
        order.artwork_notes = entry


def order_context(order, **extra):
    context = {
        'order_id': order.id,
        'order_number': order.order_number,
        'total': str(order.total_amount),
        'customer_email': order.customer_email,
        'tracking_number': order.tracking_number or '',
        'tracking_carrier': order.tracking_carrier or '',
    }
    context.update(extra)
    return context


def snippet(text, limit=100):
    text = text.strip()
    return text[:limit] + '...' if len(text) > limit else text


def normalize_artwork_status(value):
    value = ARTWORK_ALIASES.get(value, value)
    if value not in ARTWORK_STATUSES:
        raise ValidationError(
            f"Invalid artwork status. Must be one of: {', '.join(ARTWORK_STATUSES + list(ARTWORK_ALIASES))}"
        )
    return value


def clean_notes(value, field='notes'):
    """stripped note text, or None when blank"""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    return value.strip() or None


# ============== ORDER STATUS ==============

def can_change_status(old, new):
    if old == new:
        return True
    if old in TERMINAL_ORDER_STATUSES:
        return False
    if new == 'cancelled':
        return True
    if old not in ORDER_FLOW or new not in ORDER_FLOW:
        return False
    return ORDER_FLOW.index(new) > ORDER_FLOW.index(old)


def _notify_status(order, new_status):
    title = NOTIFY_ORDER_STATUSES.get(new_status)
    if not title:
        return
    outbox.notify(
        order.user_id, 'order_status', title,
        f"Order #{order.order_number} is now {new_status.replace('_', ' ')}.",
        order_id=order.id, link_url=f'/orders/{order.id}',
    )
    if new_status == 'shipped':
        outbox.email('order_shipped', order.customer_email, order_context(order))


def update_order_status(order, new_status, expected_version=None, tracking_number=None, tracking_carrier=None):
    """admin status change, returns (old_status, new_status)"""
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    check_version(order, expected_version)

    old_status = order.status
    if new_status == old_status:
        return old_status, new_status
    if not can_change_status(old_status, new_status):
        raise ConflictError(f'Cannot change status from {old_status} to {new_status}')

    order.status = new_status
    if new_status == 'shipped':
        if tracking_number:
            order.tracking_number = tracking_number
        if tracking_carrier:
            order.tracking_carrier = tracking_carrier
    bump_version(order, expected_version)
    _notify_status(order, new_status)
    return old_status, new_status


def confirm_payment(order, reference):
    """gateway confirmation. returns False when the order is past payment already"""
    if order.status not in ('pending', 'pending_payment'):
        return False
    order.status = 'paid'
    order.payment_reference = reference
    bump_version(order)
    _notify_status(order, 'paid')
    return True


# ============== ARTWORK ==============

def _artwork_side_effects(order, new_status, notes=None):
    link = f'/orders/{order.id}/artwork'

    if new_status == 'pending_approval':
        outbox.notify(
            order.user_id, 'design_ready', 'Design Ready for Review',
            f'Your design for order #{order.order_number} is ready for approval.',
            order_id=order.id, link_url=link,
        )
        outbox.email('design_ready', order.customer_email, order_context(order))

    elif new_status == 'approved':
        outbox.notify(
            outbox.ADMINS, 'artwork_approved', 'Design Approved',
            f'Customer approved design for order #{order.order_number}',
            order_id=order.id, link_url=f'/admin/orders/{order.id}',
        )
        outbox.email('artwork_approved', outbox.ADMINS, order_context(order))

    elif new_status == 'revision_requested':
        outbox.notify(
            outbox.ADMINS, 'revision_requested', 'Revision Requested',
            f'Order #{order.order_number}: {snippet(notes or "")}',
            order_id=order.id, link_url=f'/admin/orders/{order.id}',
        )
        outbox.email('revision_requested', outbox.ADMINS, order_context(order, notes=notes or ''))

    elif new_status == 'flagged':
        outbox.notify(
            order.user_id, 'issue_flagged', 'Action Needed on Your Order',
            f'We found an issue with the artwork for order #{order.order_number}.',
            order_id=order.id, link_url=link,
        )
        outbox.email('issue_flagged', order.customer_email, order_context(order, notes=notes or ''))

    elif new_status == 'artwork_uploaded':
        outbox.notify(
            outbox.ADMINS, 'design_submitted', 'Artwork Uploaded',
            f'New artwork uploaded for order #{order.order_number}',
            order_id=order.id, link_url=f'/admin/orders/{order.id}',
        )
        outbox.email('design_submitted', outbox.ADMINS, order_context(order))


def set_artwork_status(order, new_status, notes=None, now=None):
    old_status = order.artwork_status
    if new_status not in ARTWORK_TRANSITIONS.get(old_status, ()):
        raise ConflictError(f'Cannot change artwork status from {old_status} to {new_status}')
    order.artwork_status = new_status
    if new_status == 'approved':
        order.artwork_approved_at = now or datetime.now()
    _artwork_side_effects(order, new_status, notes)
    return old_status


def _design_for(design_id):
    design = db.session.get(Design, design_id) if design_id else None
    if not design:
        raise NotFoundError('Design not found')
    return design


def _order_item(order, order_item_id):
    item = db.session.get(OrderItem, order_item_id) if order_item_id else None
    if not item or item.order_id != order.id:
        raise NotFoundError('Order item not found')
    return item


_UNSET = object()


def admin_update_artwork(order, artwork_status=None, notes=None, admin_design_id=_UNSET,
                         expected_version=None, author='Admin'):
    notes = clean_notes(notes, 'artworkNotes')
    if artwork_status is not None:
        artwork_status = normalize_artwork_status(artwork_status)
    check_version(order, expected_version)

    changed = False
    if admin_design_id is not _UNSET:
        if admin_design_id:
            _design_for(admin_design_id)
        order.admin_design_id = admin_design_id or None
        changed = True

    if notes:
        append_note(order, author, notes)
        changed = True

    old_status = order.artwork_status
    if artwork_status is not None and (artwork_status != old_status or artwork_status == 'pending_approval'):
        set_artwork_status(order, artwork_status, notes)
        changed = True

    if changed:
        bump_version(order, expected_version)
    return old_status, order.artwork_status


def approve_artwork(order, user):
    check_access(order, user)
    if order.artwork_status != 'pending_approval':
        raise ConflictError('No design pending approval')
    set_artwork_status(order, 'approved')
    bump_version(order)
    return order


def request_revision(order, user, notes):
    check_access(order, user)
    notes = clean_notes(notes)
    if not notes:
        raise ValidationError("Please describe the changes you'd like")
    if order.artwork_status != 'pending_approval':
        raise ConflictError('No design pending approval')
    append_note(order, f'Customer revision request ({user.email})', notes)
    set_artwork_status(order, 'revision_requested', notes)
    bump_version(order)
    return order


def restore_original_artwork(order):
    if not order.admin_design_id:
        raise ConflictError('No admin revision to restore from')
    order.admin_design_id = None
    bump_version(order)
    outbox.notify(
        order.user_id, 'artwork_restored', 'Original Artwork Restored',
        f'We restored your original artwork for order #{order.order_number}.',
        order_id=order.id, link_url=f'/orders/{order.id}/artwork',
    )
    outbox.email('artwork_restored', order.customer_email, order_context(order))
    return order


def upload_artwork(order, user, design_id, order_item_id=None):
    """customer uploads (or re-uploads) their own artwork"""
    check_access(order, user)
    design = _design_for(design_id)
    if not user.is_admin and design.user_id != order.user_id:
        raise AuthError('Access denied', forbidden=True)
    if 'artwork_uploaded' not in ARTWORK_TRANSITIONS.get(order.artwork_status, ()):
        raise ConflictError('Artwork cannot be uploaded for this order right now')

    if order_item_id:
        _order_item(order, order_item_id).design_id = design.id
    elif len(order.items) == 1:
        order.items[0].design_id = design.id

    # a flag on the design survives re-upload until someone clears it
    design.origin = CUSTOMER_UPLOAD
    set_artwork_status(order, 'artwork_uploaded')
    bump_version(order)
    return design


def admin_upload_design(order, design_id, notes=None, order_item_id=None):
    """admin revision for the order. the item keeps the customer design so it can be restored"""
    notes = clean_notes(notes)
    design = _design_for(design_id)
    item = _order_item(order, order_item_id) if order_item_id else None
    if 'pending_approval' not in ARTWORK_TRANSITIONS.get(order.artwork_status, ()):
        raise ConflictError('Artwork is already approved for this order')
    design.origin = ADMIN_DESIGN
    if item is not None:
        design.product_id = item.product_id
    order.admin_design_id = design.id
    if notes:
        append_note(order, 'Admin', notes)
    set_artwork_status(order, 'pending_approval', notes)
    bump_version(order)
    return design


def review_design(order, action, order_item_id, notes=None):
    """admin review of one item's design: flag it or approve it"""
    if action not in ('flag', 'approve'):
        raise ValidationError('action must be flag or approve')
    notes = clean_notes(notes)
    item = _order_item(order, order_item_id)
    if not item.design:
        raise ConflictError('Order item has no design to review')

    if notes:
        append_note(order, 'Admin', notes)

    if action == 'flag':
        item.design.review_tag = TAG_FLAGGED
        if order.artwork_status != 'flagged':
            set_artwork_status(order, 'flagged', notes)
    else:
        # approval is the explicit clear of a flag
        item.design.review_tag = TAG_APPROVED
        if order.artwork_status != 'approved':
            set_artwork_status(order, 'approved')

    bump_version(order)
    return item.design


def flag_issue(order, notes=None):
    notes = clean_notes(notes)
    designs = [i.design for i in order.items if i.design]
    for design in designs:
        design.review_tag = TAG_FLAGGED

    if notes:
        append_note(order, 'Admin', notes)

    if order.artwork_status == 'flagged':
        # still tell the customer again, the notes may be new
        _artwork_side_effects(order, 'flagged', notes)
    else:
        set_artwork_status(order, 'flagged', notes)

    outbox.email('admin_issue_flagged', outbox.ADMINS, order_context(order, notes=notes or ''))
    bump_version(order)
    return designs


def initial_artwork_status(items):
    if items and all(i.design_id for i in items):
        return 'artwork_uploaded'
    return 'awaiting_artwork'
