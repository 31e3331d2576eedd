"""
Entity repositories and the ``Datastore`` that composes them.

Each repository owns exactly one collection. Which store backs the
collection is decided once, by ``build_datastore``, from the readiness value
computed at startup.
"""

import logging
import os
from collections import Counter

from flask import current_app

from app.errors import AttemptLimitError, ValidationError
from app.firestore_dao import FirestoreCollection
from app.firestore_models import (
    REQUEST_STATUSES, SUBSCRIPTION_STATUSES, Course, Material, MaterialRequest,
    Notice, Notification, Offer, Progress, Project, Quiz, QuizAttempt,
    Subject, Subscription, User, utcnow,
)
from app.json_store import ASCENDING, DESCENDING, JsonFileStore, sort_records
from app.repository import NEWEST_FIRST, Repository

logger = logging.getLogger(__name__)

USER_TYPES = ('student', 'admin')
SUBJECT_TYPES = ('Theory', 'Practical', 'Project', 'Elective')
PUBLIC_AUDIENCES = ('all', 'students')


def _coerce_int(value, name, minimum=None, maximum=None):
    """Strict integer parsing: numeric strings are accepted, anything else fails."""
    if isinstance(value, bool):
        raise ValidationError(name, 'must be an integer')
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().lstrip('-').isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError(name, f'must be an integer, got {value!r}')
    if minimum is not None and value < minimum:
        raise ValidationError(name, f'must be at least {minimum}')
    if maximum is not None and value > maximum:
        raise ValidationError(name, f'must be at most {maximum}')
    return value


def _check_choice(data, name, choices):
    if data.get(name) is not None and data[name] not in choices:
        raise ValidationError(name, f'must be one of {", ".join(choices)}')


def _average(values):
    values = list(values)
    return sum(values) / len(values) if values else 0


# ========================================================================
# Users  (collection: users)
# ========================================================================

class UserRepository(Repository):
    model = User
    collection = 'users'
    id_prefix = 'usr_'
    ordering = ()

    def clean(self, data, partial=False):
        _check_choice(data, 'user_type', USER_TYPES)
        if data.get('email'):
            data['email'] = data['email'].strip().lower()
        return data

    def find_by_email(self, email):
        return self.find_one({'email': (email or '').strip().lower()})

    def find_by_student_id(self, student_id):
        return self.find_one({'student_id': student_id})

    def find_by_email_or_student_id(self, email=None, student_id=None):
        """First user matching either key; two equality lookups, email first."""
        if email:
            user = self.find_by_email(email)
            if user:
                return user
        if student_id:
            return self.find_by_student_id(student_id)
        return None


# ========================================================================
# Subjects  (collection: subjects)
# ========================================================================

class SubjectRepository(Repository):
    model = Subject
    collection = 'subjects'
    id_prefix = 'subj_'
    ordering = (('semester', ASCENDING), ('name', ASCENDING))

    def clean(self, data, partial=False):
        if not partial or 'semester' in data:
            data['semester'] = _coerce_int(data.get('semester'), 'semester', 1, 6)
        for name in ('credits', 'hours'):
            if data.get(name) is not None:
                data[name] = _coerce_int(data[name], name, minimum=0)
        _check_choice(data, 'type', SUBJECT_TYPES)
        return data

    def find_by_code(self, code):
        return self.find_one({'code': code})

    def find_by_branch(self, branch, semester=None):
        filters = {'branch': branch}
        if semester is not None:
            filters['semester'] = semester
        return self.find(filters)

    def delete_all(self):
        return self.store.delete_where({})

    def delete_all_by_branch(self, branch):
        return self.store.delete_where({'branch': branch})


# ========================================================================
# Notices  (collection: notices)
# ========================================================================

class NoticeRepository(Repository):
    model = Notice
    collection = 'notices'
    id_prefix = 'notice_'
    ordering = (('is_pinned', DESCENDING), ('created_at', DESCENDING))
    prepend = True

    def find_public(self):
        """Notices addressed to everyone or to students, pinned first."""
        def run():
            records = []
            for audience in PUBLIC_AUDIENCES:
                records.extend(self.store.query({'target_audience': audience}))
            return [self._wrap(r) for r in sort_records(records, self.ordering)]

        return self._read('find_public', [], run).value

    def find_with_options(self, filters=None, sort=None, limit=None):
        """``sort`` maps field names to 'asc' or 'desc'; defaults to pinned-first."""
        order_by = None
        if sort:
            order_by = tuple(
                (name, DESCENDING if str(direction).lower() == 'desc' else ASCENDING)
                for name, direction in sort.items()
            )
        return self.find(filters, order_by=order_by, limit=limit)


# ========================================================================
# Materials  (collection: materials)
# ========================================================================

class MaterialRepository(Repository):
    model = Material
    collection = 'materials'
    id_prefix = 'mat_'
    prepend = True

    def find_by_subject(self, subject_id):
        return self.find({'subject_id': subject_id})

    def find_by_subject_code(self, subject_code):
        return self.find({'subject_code': subject_code})

    def increment_downloads(self, material_id):
        return self.increment(material_id, 'downloads')

    def update_rating(self, material_id, rating):
        """Fold one rating (1-5) into the running average."""
        if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
            raise ValidationError('rating', 'must be a number between 1 and 5')
        material = self.get(material_id)
        if material is None:
            return None
        count = material.rating_count + 1
        average = (material.rating * material.rating_count + rating) / count
        return self.find_by_id_and_update(material_id, {'rating': average, 'rating_count': count})


# ========================================================================
# Quizzes  (collection: quizzes)
# ========================================================================

class QuizRepository(Repository):
    model = Quiz
    collection = 'quizzes'
    id_prefix = 'quiz_'

    def find_by_subject(self, subject_id):
        return self.find({'subject_id': subject_id, 'is_active': True})

    def find_by_semester_branch(self, semester, branch):
        return self.find({'semester': semester, 'branch': branch, 'is_active': True})

    def get_stats(self):
        quizzes = self.all()
        active = sum(1 for q in quizzes if q.is_active)
        return {
            'total': len(quizzes),
            'active': active,
            'inactive': len(quizzes) - active,
            'average_questions': _average(len(q.questions) for q in quizzes),
        }


# ========================================================================
# Quiz attempts  (collection: quizAttempts)
# ========================================================================

class QuizAttemptRepository(Repository):
    model = QuizAttempt
    collection = 'quizAttempts'
    id_prefix = 'attempt_'

    def clean(self, data, partial=False):
        if not partial and data.get('status', 'completed') == 'completed':
            data.setdefault('completed_at', utcnow())
        return data

    def find_by_user(self, user_id, quiz_id=None):
        filters = {'user_id': user_id}
        if quiz_id:
            filters['quiz_id'] = quiz_id
        return self.find(filters)

    def find_by_quiz(self, quiz_id):
        return self.find({'quiz_id': quiz_id})

    def get_best_attempt(self, user_id, quiz_id):
        attempts = self.find_by_user(user_id, quiz_id)
        if not attempts:
            return None
        return max(attempts, key=lambda a: a.score)

    def get_latest_attempt(self, user_id, quiz_id):
        attempts = self.find_by_user(user_id, quiz_id)
        return attempts[0] if attempts else None

    def can_attempt(self, user_id, quiz_id, max_attempts):
        return len(self.find_by_user(user_id, quiz_id)) < max_attempts

    def start_attempt(self, user_id, quiz):
        """Open a new attempt, numbered after the user's previous ones."""
        previous = len(self.fetch({'user_id': user_id, 'quiz_id': quiz.id}))
        if previous >= quiz.max_attempts:
            raise AttemptLimitError(quiz.id, quiz.max_attempts)
        return self.create({
            'user_id': user_id,
            'quiz_id': quiz.id,
            'quiz_title': quiz.title,
            'subject_id': quiz.subject_id,
            'subject_name': quiz.subject_name,
            'branch': quiz.branch,
            'semester': quiz.semester,
            'total_questions': len(quiz.questions),
            'time_limit': quiz.time_limit,
            'attempt_number': previous + 1,
            'status': 'started',
        })

    def submit(self, attempt, quiz, answers, time_spent=0):
        """Grade ``answers`` and record the result on ``attempt``."""
        result = quiz.grade(answers)
        for name, value in result.items():
            setattr(attempt, name, value)
        attempt.time_spent = time_spent
        attempt.status = 'completed'
        attempt.completed_at = utcnow()
        return attempt.save()

    def get_stats(self, quiz_id=None):
        attempts = self.all({'quiz_id': quiz_id} if quiz_id else None)
        total = len(attempts)
        passed = sum(1 for a in attempts if a.passed)
        return {
            'total': total,
            'passed': passed,
            'failed': total - passed,
            'pass_rate': (passed / total) * 100 if total else 0,
            'average_score': _average(a.score for a in attempts),
            'average_time': _average(a.time_spent for a in attempts),
        }


# ========================================================================
# Subscriptions  (collection: subscriptions)
# ========================================================================

class SubscriptionRepository(Repository):
    model = Subscription
    collection = 'subscriptions'
    id_prefix = 'sub_'

    def clean(self, data, partial=False):
        _check_choice(data, 'status', SUBSCRIPTION_STATUSES)
        return data

    def find_by_user(self, user_id):
        return self.find({'user_id': user_id})

    def find_active_by_user(self, user_id, semester=None, now=None):
        """Most recent subscription that is active and within its date range."""
        filters = {'user_id': user_id, 'status': 'active'}
        if semester is not None:
            filters['semester'] = semester
        for subscription in self.find(filters):
            if subscription.is_current(now):
                return subscription
        return None

    def has_access(self, user_id, feature, semester=None, now=None):
        subscription = self.find_active_by_user(user_id, semester, now)
        return subscription is not None and subscription.has_feature(feature)

    def update_status(self, subscription_id, status):
        if status not in SUBSCRIPTION_STATUSES:
            raise ValidationError('status', f'must be one of {", ".join(SUBSCRIPTION_STATUSES)}')
        return self.find_by_id_and_update(subscription_id, {'status': status})

    def get_stats(self):
        subscriptions = self.all()
        counts = Counter(s.status for s in subscriptions)
        stats = {'total': len(subscriptions)}
        for status in SUBSCRIPTION_STATUSES:
            stats[status] = counts.get(status, 0)
        stats['revenue'] = sum(s.price or 0 for s in subscriptions)
        return stats


# ========================================================================
# Notifications  (collection: notifications)
# ========================================================================

class NotificationRepository(Repository):
    model = Notification
    collection = 'notifications'
    id_prefix = 'notif_'
    create_overrides = {
        'is_read': False,
        'is_email_sent': False,
        'is_push_sent': False,
        'read_at': None,
    }

    def find_by_user(self, user_id, filters=None, limit=None):
        query = dict(filters or {})
        query['user_id'] = user_id
        return self.find(query, limit=limit)

    def find_unread_by_user(self, user_id):
        return self.find_by_user(user_id, {'is_read': False})

    def count_unread(self, user_id):
        return len(self.find_unread_by_user(user_id))

    def find_by_category(self, user_id, category):
        return self.find_by_user(user_id, {'category': category})

    def find_scheduled(self, now=None):
        """Notifications whose scheduled time has arrived, earliest first."""
        now = now or utcnow()
        due = [n for n in self.all() if n.scheduled_for is not None and n.scheduled_for <= now]
        due.sort(key=lambda n: n.scheduled_for)
        return due

    def mark_all_as_read(self, user_id):
        """Mark every unread notification of ``user_id`` as read; returns the count."""
        return self.store.update_where(
            {'user_id': user_id, 'is_read': False},
            {'is_read': True, 'read_at': utcnow()},
        )

    def get_stats(self, user_id=None):
        notifications = self.all({'user_id': user_id} if user_id else None)
        read = sum(1 for n in notifications if n.is_read)
        return {
            'total': len(notifications),
            'unread': len(notifications) - read,
            'read': read,
            'email_sent': sum(1 for n in notifications if n.is_email_sent),
            'push_sent': sum(1 for n in notifications if n.is_push_sent),
            'by_type': dict(Counter(n.type for n in notifications)),
            'by_category': dict(Counter(n.category for n in notifications)),
        }


# ========================================================================
# Offers  (collection: offers)
# ========================================================================

class OfferRepository(Repository):
    model = Offer
    collection = 'offers'
    id_prefix = 'offer_'
    create_overrides = {'used_count': 0}

    def clean(self, data, partial=False):
        _check_choice(data, 'discount_type', ('percentage', 'fixed', 'free'))
        if not partial and data.get('discounted_price') is None:
            data['discounted_price'] = Offer.from_dict(data).calculate_discounted_price()
        return data

    def find_active(self, filters=None, now=None):
        """Valid offers; an offer field set to 'all' matches any filter value."""
        offers = self.find({'is_active': True})
        return [o for o in offers if o.is_valid(now) and o.applies_to(**(filters or {}))]

    def find_applicable(self, branch, semester, subscription_type='semester', now=None):
        return self.find_active({
            'branch': branch,
            'semester': semester,
            'subscription_type': subscription_type,
        }, now=now)

    def get_stats(self, now=None):
        now = now or utcnow()
        offers = self.all()
        return {
            'total': len(offers),
            'active': sum(1 for o in offers if o.is_valid(now)),
            'expired': sum(1 for o in offers if o.is_expired(now)),
            'total_uses': sum(o.used_count for o in offers),
            'total_savings': sum(
                (o.original_price - o.discounted_price) * o.used_count for o in offers
            ),
        }


# ========================================================================
# Progress  (collection: progress)
# ========================================================================

class ProgressRepository(Repository):
    model = Progress
    collection = 'progress'
    id_prefix = 'prog_'
    ordering = (('updated_at', DESCENDING),)

    def clean(self, data, partial=False):
        if data.get('progress') is not None:
            value = data['progress']
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
                raise ValidationError('progress', 'must be a number between 0 and 100')
        return data

    def find_by_user_and_content(self, user_id, content_id, content_type=None):
        filters = {'user_id': user_id, 'content_id': content_id}
        if content_type:
            filters['content_type'] = content_type
        return self.find_one(filters)

    def find_by_user(self, user_id, filters=None):
        query = dict(filters or {})
        query['user_id'] = user_id
        return self.find(query)

    def find_by_subject(self, subject_id, user_id=None):
        filters = {'subject_id': subject_id}
        if user_id:
            filters['user_id'] = user_id
        return self.find(filters)

    def get_user_semester_progress(self, user_id, semester, branch):
        records = self.find_by_user(user_id, {'semester': semester, 'branch': branch})
        subjects = {}
        for p in records:
            entry = subjects.setdefault(p.subject_id, {
                'subject_id': p.subject_id,
                'subject_name': p.subject_name,
                'total_content': 0,
                'completed_content': 0,
                'time_spent': 0,
                '_progress': [],
            })
            entry['total_content'] += 1
            entry['time_spent'] += p.time_spent
            entry['_progress'].append(p.progress)
            if p.completed:
                entry['completed_content'] += 1
        for entry in subjects.values():
            entry['average_progress'] = _average(entry.pop('_progress'))
        return {
            'total_content': len(records),
            'completed_content': sum(1 for p in records if p.completed),
            'average_progress': _average(p.progress for p in records),
            'total_time_spent': sum(p.time_spent for p in records),
            'subjects': list(subjects.values()),
        }

    def update_progress(self, user_id, content_id, content_type, data):
        """Create or update the user's progress record for one piece of content."""
        existing = self.fetch({
            'user_id': user_id,
            'content_id': content_id,
            'content_type': content_type,
        })
        if not existing:
            record = dict(data, user_id=user_id, content_id=content_id,
                          content_type=content_type)
            return self.create(record)
        return self.find_by_id_and_update(existing[0].id, data)

    def get_stats(self, user_id=None):
        records = self.all({'user_id': user_id} if user_id else None)
        total = len(records)
        completed = sum(1 for p in records if p.completed)
        return {
            'total': total,
            'completed': completed,
            'bookmarked': sum(1 for p in records if p.bookmarked),
            'average_progress': _average(p.progress for p in records),
            'total_time_spent': sum(p.time_spent for p in records),
            'completion_rate': (completed / total) * 100 if total else 0,
        }


# ========================================================================
# Projects  (collection: projects)
# ========================================================================

class ProjectRepository(Repository):
    model = Project
    collection = 'projects'
    id_prefix = 'proj_'

    def find_approved(self):
        return self.find({'status': 'approved'})

    def find_by_student(self, student_id):
        return self.find({'student_id': student_id})

    def approve(self, project_id, approved_by):
        return self.find_by_id_and_update(project_id, {
            'status': 'approved',
            'approved_by': approved_by,
            'approved_at': utcnow(),
        })

    def reject(self, project_id, rejected_by):
        return self.find_by_id_and_update(project_id, {
            'status': 'rejected',
            'approved_by': rejected_by,
            'approved_at': None,
        })


# ========================================================================
# Courses  (collection: courses)
# ========================================================================

class CourseRepository(Repository):
    model = Course
    collection = 'courses'
    id_prefix = 'course_'
    ordering = NEWEST_FIRST


# ========================================================================
# Material requests  (collection: materialRequests)
# ========================================================================

class MaterialRequestRepository(Repository):
    model = MaterialRequest
    collection = 'materialRequests'
    id_prefix = 'req_'

    def check_status(self, status):
        if status not in REQUEST_STATUSES:
            raise ValidationError('status', f'must be one of {", ".join(REQUEST_STATUSES)}')

    def clean(self, data, partial=False):
        if data.get('status') is not None:
            self.check_status(data['status'])
        return data

    def find_by_user(self, user_id):
        return self.find({'user_id': user_id})

    def find_by_subject(self, subject_id):
        return self.find({'subject_id': subject_id})

    def find_pending(self, filters=None):
        query = dict(filters or {})
        query['status'] = 'pending'
        return self.find(query)

    def find_popular(self, limit=10):
        """Pending requests with the most upvotes."""
        return self.find({'status': 'pending'},
                         order_by=(('upvotes', DESCENDING),), limit=limit)

    def has_similar_request(self, user_id, title, subject_id):
        title = (title or '').lower()
        return any(
            r.subject_id == subject_id and r.status == 'pending' and title in r.title.lower()
            for r in self.find_by_user(user_id)
        )

    def get_stats(self):
        requests = self.all()
        counts = Counter(r.status for r in requests)
        stats = {'total': len(requests)}
        for status in REQUEST_STATUSES:
            stats[status] = counts.get(status, 0)
        stats['average_upvotes'] = _average(r.upvotes for r in requests)
        stats['top_priority'] = sum(1 for r in requests if r.priority == 'urgent')
        return stats


# ========================================================================
# Composition
# ========================================================================

REPOSITORIES = {
    'users': UserRepository,
    'subjects': SubjectRepository,
    'notices': NoticeRepository,
    'materials': MaterialRepository,
    'quizzes': QuizRepository,
    'quiz_attempts': QuizAttemptRepository,
    'subscriptions': SubscriptionRepository,
    'notifications': NotificationRepository,
    'offers': OfferRepository,
    'progress': ProgressRepository,
    'projects': ProjectRepository,
    'courses': CourseRepository,
    'material_requests': MaterialRequestRepository,
}


class Datastore:
    """One repository per entity, all backed by the same kind of store."""

    def __init__(self, store_for):
        self.repositories = {}
        for name, repository_class in REPOSITORIES.items():
            repository = repository_class(store_for(repository_class))
            self.repositories[name] = repository
            setattr(self, name, repository)

    @property
    def backend(self):
        return self.users.backend

    def __iter__(self):
        return iter(self.repositories.items())


def build_datastore(readiness, data_dir):
    """Firestore collections when ``readiness.ready``, JSON files otherwise."""
    if readiness.ready:
        client = readiness.client
        logger.info('Using Firestore for all collections')
        return Datastore(lambda repo: FirestoreCollection(client, repo.collection))

    logger.info('Using local JSON files in %s', data_dir)
    return Datastore(lambda repo: JsonFileStore(
        os.path.join(data_dir, f'{repo.collection}.json'), prepend=repo.prepend))


def get_datastore():
    return current_app.extensions['datastore']
