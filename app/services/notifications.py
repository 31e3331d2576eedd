"""
Notification dispatch.

Creates notification records and, when delivery channels are configured,
attempts email and push delivery for each one. A delivery failure is logged
and leaves the record in place with its ``is_email_sent`` / ``is_push_sent``
flag unset.

Channels are plain objects: ``email_sender.send_email(message)`` and
``push_sender.send_push(message)``. ``relay(notification)`` is called after
creation to push the record to connected clients.
"""

import logging

from flask import current_app

from app.firestore_models import utcnow

logger = logging.getLogger(__name__)

EMAIL_TEMPLATES = {
    'subscription': 'subscription-notification',
    'quiz': 'quiz-notification',
    'material': 'material-notification',
    'offer': 'offer-notification',
    'system': 'system-notification',
    'announcement': 'announcement-notification',
}
DEFAULT_EMAIL_TEMPLATE = 'default-notification'

# Keys that control dispatch and are not stored on the notification
_DISPATCH_KEYS = ('send_email', 'send_push')


def email_template_for(notification_type):
    return EMAIL_TEMPLATES.get(notification_type, DEFAULT_EMAIL_TEMPLATE)


class NotificationService:

    def __init__(self, datastore, email_sender=None, push_sender=None, relay=None):
        self.datastore = datastore
        self.email_sender = email_sender
        self.push_sender = push_sender
        self.relay = relay

    # -- Core ---------------------------------------------------------------

    def send_notification(self, user_id, data):
        """Create one notification for ``user_id`` and try to deliver it."""
        record = {k: v for k, v in data.items() if k not in _DISPATCH_KEYS}
        record['user_id'] = user_id
        notification = self.datastore.notifications.create(record)

        if self.email_sender and data.get('send_email', True) is not False:
            self.deliver_email(notification)
        if self.push_sender and data.get('send_push', True) is not False:
            self.deliver_push(notification)
        if self.relay:
            try:
                self.relay(notification)
            except Exception as e:
                logger.warning('Could not relay notification %s: %s', notification.id, e)
        return notification

    def send_bulk_notification(self, user_ids, data):
        return [self.send_notification(user_id, data) for user_id in user_ids]

    def send_broadcast_notification(self, data):
        users = self.datastore.users.find()
        return self.send_bulk_notification([u.id for u in users], data)

    def send_notification_by_criteria(self, criteria, data):
        users = self.datastore.users.find(criteria)
        return self.send_bulk_notification([u.id for u in users], data)

    # -- Delivery -------------------------------------------------------------

    def deliver_email(self, notification):
        """Email the notification's user. Returns True when sent."""
        user = self.datastore.users.find_by_id(notification.user_id)
        if user is None:
            logger.warning('User %s not found for notification %s',
                           notification.user_id, notification.id)
            return False
        message = {
            'to': user.email,
            'subject': notification.title,
            'template': email_template_for(notification.type),
            'data': dict(
                notification.metadata,
                user_name=user.name,
                title=notification.title,
                message=notification.message,
                action_url=notification.action_url,
                action_text=notification.action_text,
            ),
        }
        try:
            self.email_sender.send_email(message)
        except Exception as e:
            logger.warning('Email delivery failed for notification %s: %s', notification.id, e)
            return False
        notification.mark_email_sent()
        logger.info('Email notification sent to %s', user.email)
        return True

    def deliver_push(self, notification):
        """Push the notification to the user's devices. Returns True when sent."""
        message = {
            'user_id': notification.user_id,
            'title': notification.title,
            'body': notification.message,
            'data': dict(
                notification.metadata,
                notification_id=notification.id,
                type=notification.type,
                category=notification.category,
                action_url=notification.action_url,
            ),
        }
        try:
            self.push_sender.send_push(message)
        except Exception as e:
            logger.warning('Push delivery failed for notification %s: %s', notification.id, e)
            return False
        notification.mark_push_sent()
        return True

    # -- Templates ------------------------------------------------------------

    def send_subscription_expiry_warning(self, user_id, subscription):
        days_left = subscription.days_left()
        return self.send_notification(user_id, {
            'title': 'Subscription Expiring Soon',
            'message': (f'Your {subscription.subscription_type} subscription expires in '
                        f'{days_left} days. Renew now to continue accessing premium features.'),
            'type': 'warning',
            'category': 'subscription',
            'priority': 'high',
            'action_url': '/subscriptions',
            'action_text': 'Renew Subscription',
            'metadata': {
                'subscription_id': subscription.id,
                'days_left': days_left,
                'subscription_type': subscription.subscription_type,
            },
        })

    def send_subscription_expired(self, user_id, subscription):
        return self.send_notification(user_id, {
            'title': 'Subscription Expired',
            'message': (f'Your {subscription.subscription_type} subscription has expired. '
                        'Renew now to regain access to premium features.'),
            'type': 'error',
            'category': 'subscription',
            'priority': 'urgent',
            'action_url': '/subscriptions',
            'action_text': 'Renew Now',
            'metadata': {'subscription_id': subscription.id},
        })

    def send_subscription_renewed(self, user_id, subscription):
        return self.send_notification(user_id, {
            'title': 'Subscription Renewed',
            'message': (f'Your {subscription.subscription_type} subscription has been '
                        'successfully renewed. Thank you for your continued support!'),
            'type': 'success',
            'category': 'subscription',
            'priority': 'medium',
            'metadata': {'subscription_id': subscription.id},
        })

    def send_quiz_available(self, user_id, quiz):
        return self.send_notification(user_id, {
            'title': 'New Quiz Available',
            'message': (f'A new quiz "{quiz.title}" is now available for '
                        f'{quiz.subject_name}. Test your knowledge!'),
            'type': 'info',
            'category': 'quiz',
            'priority': 'medium',
            'action_url': f'/quizzes/{quiz.id}',
            'action_text': 'Take Quiz',
            'metadata': {'quiz_id': quiz.id, 'subject_id': quiz.subject_id},
        })

    def send_quiz_score(self, user_id, attempt):
        outcome = 'passed' if attempt.passed else 'failed'
        return self.send_notification(user_id, {
            'title': f'Quiz {outcome.capitalize()}',
            'message': (f'You {outcome} the quiz "{attempt.quiz_title}" with a score of '
                        f'{attempt.score}/{attempt.total_questions} ({attempt.percentage:.1f}%).'),
            'type': 'success' if attempt.passed else 'info',
            'category': 'quiz',
            'priority': 'medium',
            'action_url': f'/quizzes/{attempt.quiz_id}/results',
            'action_text': 'View Results',
            'metadata': {
                'quiz_id': attempt.quiz_id,
                'score': attempt.score,
                'total_questions': attempt.total_questions,
                'percentage': attempt.percentage,
                'passed': attempt.passed,
            },
        })

    def send_material_uploaded(self, user_id, material):
        return self.send_notification(user_id, {
            'title': 'New Material Available',
            'message': (f'New {material.type} material "{material.title}" has been '
                        f'uploaded for {material.subject_name}.'),
            'type': 'info',
            'category': 'material',
            'priority': 'medium',
            'action_url': f'/materials/{material.id}',
            'action_text': 'View Material',
            'metadata': {'material_id': material.id, 'subject_id': material.subject_id},
        })

    def send_material_request_fulfilled(self, user_id, request):
        return self.send_notification(user_id, {
            'title': 'Material Request Fulfilled',
            'message': (f'Your request for "{request.title}" has been fulfilled. '
                        'The material is now available for download.'),
            'type': 'success',
            'category': 'material',
            'priority': 'medium',
            'metadata': {'request_id': request.id},
        })

    def send_offer_available(self, user_id, offer):
        return self.send_notification(user_id, {
            'title': 'Special Offer Available',
            'message': (f'Limited time offer: {offer.title}. '
                        f'Get {offer.discount_value:g}% off on your subscription!'),
            'type': 'info',
            'category': 'offer',
            'priority': 'high',
            'action_url': '/subscriptions',
            'action_text': 'View Offer',
            'metadata': {'offer_id': offer.id},
        })

    def send_system_maintenance(self, user_id, maintenance):
        return self.send_notification(user_id, {
            'title': 'System Maintenance Scheduled',
            'message': (f"Scheduled maintenance will occur on {maintenance['date']} from "
                        f"{maintenance['start_time']} to {maintenance['end_time']}."),
            'type': 'warning',
            'category': 'system',
            'priority': 'high',
            'metadata': dict(maintenance),
        })

    def send_announcement(self, user_id, announcement):
        return self.send_notification(user_id, {
            'title': announcement['title'],
            'message': announcement['message'],
            'type': 'info',
            'category': 'announcement',
            'priority': announcement.get('priority', 'medium'),
            'metadata': announcement.get('metadata') or {},
        })

    # -- Scheduling -----------------------------------------------------------

    def schedule_notification(self, user_id, data, scheduled_for):
        """Store a notification for later delivery; nothing is sent now."""
        record = {k: v for k, v in data.items() if k not in _DISPATCH_KEYS}
        record.update(user_id=user_id, scheduled_for=scheduled_for)
        return self.datastore.notifications.create(record)

    def process_scheduled_notifications(self, now=None):
        """Deliver every due notification and clear its schedule."""
        due = self.datastore.notifications.find_scheduled(now or utcnow())
        for notification in due:
            if self.email_sender:
                self.deliver_email(notification)
            if self.push_sender:
                self.deliver_push(notification)
            notification.scheduled_for = None
            notification.sent_at = utcnow()
            notification.save()
        logger.info('Processed %d scheduled notifications', len(due))
        return len(due)

    def get_notification_stats(self, user_id=None):
        return self.datastore.notifications.get_stats(user_id)


def get_notification_service():
    return current_app.extensions['notifications']
