import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app

from errors import NotFoundError, ValidationError
from models import EmailTemplate, db

logger = logging.getLogger(__name__)

# built-in templates, admins can override subject/body per key.
# placeholders use str.format
DEFAULT_TEMPLATES = {
    'order_received': {
        'subject': 'We received your order #{order_number}',
        'body': (
            'Thanks for your order!\n\n'
            'Order #{order_number}\nTotal: ${total}\n\n'
            'We will let you know when your design is ready for review.\n'
            '{site_url}/orders/{order_id}'
        ),
    },
    'new_order': {
        'subject': 'New order #{order_number}',
        'body': 'New order #{order_number} from {customer_email}, total ${total}.\n{site_url}/admin/orders/{order_id}',
    },
    'design_ready': {
        'subject': 'Your design for order #{order_number} is ready for review',
        'body': (
            'Your design for order #{order_number} is ready for approval.\n\n'
            'Review it here: {site_url}/orders/{order_id}/artwork'
        ),
    },
    'design_submitted': {
        'subject': 'Artwork uploaded for order #{order_number}',
        'body': 'The customer uploaded artwork for order #{order_number}.\n{site_url}/admin/orders/{order_id}',
    },
    'artwork_approved': {
        'subject': 'Customer approved design for order #{order_number}',
        'body': 'Customer approved design for order #{order_number}. It can go to production.\n{site_url}/admin/orders/{order_id}',
    },
    'revision_requested': {
        'subject': 'Revision requested for order #{order_number}',
        'body': 'The customer asked for changes on order #{order_number}:\n\n{notes}\n\n{site_url}/admin/orders/{order_id}',
    },
    'issue_flagged': {
        'subject': 'Action needed on your order #{order_number}',
        'body': (
            'We found an issue with the artwork for order #{order_number}.\n\n'
            '{notes}\n\n'
            'Please upload a corrected design: {site_url}/orders/{order_id}/artwork'
        ),
    },
    'admin_issue_flagged': {
        'subject': 'Issue flagged on order #{order_number}',
        'body': 'Order #{order_number} was flagged.\n\n{notes}\n{site_url}/admin/orders/{order_id}',
    },
    'artwork_restored': {
        'subject': 'Original artwork restored for order #{order_number}',
        'body': 'We restored your original artwork for order #{order_number}.\n{site_url}/orders/{order_id}/artwork',
    },
    'order_shipped': {
        'subject': 'Your order #{order_number} has shipped',
        'body': 'Order #{order_number} is on its way.\nCarrier: {tracking_carrier}\nTracking: {tracking_number}',
    },
}


def get_template(key):
    if key not in DEFAULT_TEMPLATES:
        raise NotFoundError(f'Unknown email template: {key}')
    override = db.session.get(EmailTemplate, key)
    if override:
        return {'key': key, 'subject': override.subject, 'body': override.body, 'custom': True}
    return dict(DEFAULT_TEMPLATES[key], key=key, custom=False)


def list_templates():
    return [get_template(key) for key in sorted(DEFAULT_TEMPLATES)]


def save_template(key, subject, body):
    if key not in DEFAULT_TEMPLATES:
        raise NotFoundError(f'Unknown email template: {key}')
    if not subject or not body:
        raise ValidationError('subject and body are required')

    tmpl = db.session.get(EmailTemplate, key)
    if tmpl is None:
        tmpl = EmailTemplate(key=key, subject=subject, body=body)
        db.session.add(tmpl)
    else:
        tmpl.subject = subject
        tmpl.body = body
    return tmpl


class _Blank(dict):
    def __missing__(self, key):
        return ''


def render(key, context):
    """returns (subject, body)"""
    context = _Blank(context or {})
    context.setdefault('site_url', current_app.config.get('SITE_URL', ''))
    tmpl = get_template(key)
    try:
        return tmpl['subject'].format_map(context), tmpl['body'].format_map(context)
    except (ValueError, IndexError, AttributeError):
        # a broken admin override should not block the email
        logger.warning("email template %s failed to render, using built-in", key)
        default = DEFAULT_TEMPLATES[key]
        return default['subject'].format_map(context), default['body'].format_map(context)


def send_email(to, subject, body):
    """raises on smtp failure so the outbox can retry"""
    cfg = current_app.config
    if not cfg.get('SMTP_HOST'):
        logger.info("smtp not configured, skipping email to %s: %s", to, subject)
        return False

    message = MIMEMultipart('alternative')
    message['Subject'] = subject
    message['From'] = cfg['EMAIL_FROM']
    message['To'] = to
    message.attach(MIMEText(body, 'plain'))

    with smtplib.SMTP(cfg['SMTP_HOST'], cfg['SMTP_PORT'], timeout=30) as server:
        server.starttls()
        if cfg.get('SMTP_USER'):
            server.login(cfg['SMTP_USER'], cfg.get('SMTP_PASSWORD'))
        server.sendmail(cfg['EMAIL_FROM'], [to], message.as_string())

    logger.info("email sent to %s: %s", to, subject)
    return True
