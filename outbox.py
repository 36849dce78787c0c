"""
Durable side effects.

State changes write OutboxEvent rows in the same transaction as the change
itself. Dispatch happens after commit: right away for the events a request
produced, and again from `flask drain-outbox` for anything that failed.
A dispatch failure never undoes the state change that produced it.
"""

import logging
from datetime import datetime, timedelta

from flask import current_app, g, has_request_context

import emails
from models import Notification, OutboxEvent, User, db, gen_id

logger = logging.getLogger(__name__)

ADMINS = 'admins'


def enqueue(kind, payload):
    """add an event to the current session, the caller commits"""
    event = OutboxEvent(id=gen_id('evt'), kind=kind, payload=payload, status='pending', attempts=0)
    db.session.add(event)
    if has_request_context():
        g.setdefault('outbox_ids', []).append(event.id)
    return event


def notify(user_id, type, title, message, order_id=None, link_url=None):
    if not user_id:
        return None
    return enqueue('notification', {
        'userId': user_id,
        'type': type,
        'title': title,
        'message': message,
        'orderId': order_id,
        'linkUrl': link_url,
    })


def email(template, to, context):
    """one event per recipient, so a retry only goes to whoever it failed for"""
    if not to:
        return []
    return [
        enqueue('email', {'template': template, 'to': recipient, 'context': context})
        for recipient in _email_recipients(to)
    ]


def take_request_ids():
    if not has_request_context():
        return []
    return g.pop('outbox_ids', [])


# ---------- DISPATCH ----------

def admin_users():
    return User.query.filter_by(is_admin=True).all()


def _email_recipients(to):
    if to != ADMINS:
        return [to]
    with db.session.no_autoflush:
        recipients = [u.email for u in admin_users()]
    extra = current_app.config.get('ADMIN_EMAIL')
    if extra and extra not in recipients:
        recipients.append(extra)
    return recipients


def dispatch(event):
    payload = event.payload or {}

    if event.kind == 'notification':
        if payload.get('userId') == ADMINS:
            user_ids = [u.id for u in admin_users()]
        else:
            user_ids = [payload.get('userId')]
        for uid in user_ids:
            db.session.add(Notification(
                user_id=uid,
                type=payload.get('type'),
                title=payload.get('title'),
                message=payload.get('message'),
                order_id=payload.get('orderId'),
                link_url=payload.get('linkUrl'),
            ))
        return

    if event.kind == 'email':
        subject, body = emails.render(payload['template'], payload.get('context'))
        emails.send_email(payload['to'], subject, body)
        return

    raise ValueError(f'unknown outbox event kind: {event.kind}')


def backoff(attempts):
    cfg = current_app.config
    seconds = cfg['OUTBOX_BACKOFF_BASE_SECONDS'] * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, cfg['OUTBOX_BACKOFF_MAX_SECONDS']))


def is_due(event, now):
    if event.attempts == 0 or event.last_attempt_at is None:
        return True
    return event.last_attempt_at + backoff(event.attempts) <= now


def dispatch_pending(ids=None, now=None):
    """send what's due. returns (sent, failed) counts and never raises"""
    now = now or datetime.now()
    cfg = current_app.config
    sent = failed = 0

    try:
        query = OutboxEvent.query.filter(
            OutboxEvent.status.in_(('pending', 'failed')),
            OutboxEvent.attempts < cfg['OUTBOX_MAX_ATTEMPTS'],
        )
        if ids is not None:
            if not ids:
                return 0, 0
            query = query.filter(OutboxEvent.id.in_(ids))
        events = query.order_by(OutboxEvent.created_at).limit(cfg['OUTBOX_BATCH_SIZE']).all()
    except Exception:
        logger.exception("could not load outbox events")
        db.session.rollback()
        return 0, 0

    for event in events:
        if not is_due(event, now):
            continue
        event_id = event.id
        try:
            dispatch(event)
            event.attempts += 1
            event.status = 'sent'
            event.sent_at = now
            event.last_attempt_at = now
            event.last_error = None
            db.session.commit()
            sent += 1
        except Exception as e:
            logger.exception("outbox event %s (%s) failed", event_id, event.kind)
            db.session.rollback()
            failed += 1
            try:
                event = db.session.get(OutboxEvent, event_id)
                event.attempts += 1
                event.status = 'failed'
                event.last_attempt_at = now
                event.last_error = str(e)[:1000]
                db.session.commit()
            except Exception:
                logger.exception("could not record failure for outbox event %s", event_id)
                db.session.rollback()

    return sent, failed


def retry(event):
    """admin retry: reset so the next dispatch picks it up immediately"""
    event.status = 'pending'
    event.attempts = 0
    event.last_attempt_at = None
    event.last_error = None
    return event
