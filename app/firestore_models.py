"""
Document models for the college portal, using Python dataclasses.

Every model shares the same contract, inherited from ``Document``:
  - ``id`` is the document ID, assigned once by the store on creation
  - ``to_dict()`` returns the persisted fields (everything except ``id``)
  - ``from_dict(data, doc_id)`` builds an instance, filling any absent or
    null field with that field's default
  - ``to_json()`` returns a JSON-safe dict including ``id``

The same shape is produced whether a record came from Firestore or from the
local JSON files. Datetime fields accept native datetimes (Firestore) and
ISO-8601 strings (JSON files) and are always normalised to aware UTC.

Instances returned by a repository are bound to it, so ``save()``,
``delete()`` and the lifecycle helpers below persist through whichever store
backs that repository.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import MISSING, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.errors import OfferNotValidError, UnboundDocumentError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_clock_lock = threading.Lock()
_last_stamp: Optional[datetime] = None


def utcnow() -> datetime:
    """Current UTC time, strictly later than any value previously returned."""
    global _last_stamp
    with _clock_lock:
        stamp = datetime.now(timezone.utc)
        if _last_stamp is not None and stamp <= _last_stamp:
            stamp = _last_stamp + timedelta(microseconds=1)
        _last_stamp = stamp
        return stamp


def parse_datetime(value) -> Optional[datetime]:
    """Convert a value to an aware UTC datetime. Accepts datetime objects,
    ISO-format strings, and Firestore DatetimeWithNanoseconds objects.
    Naive values are taken to be UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def jsonable(value):
    """Recursively convert datetimes to ISO strings."""
    if isinstance(value, datetime):
        return parse_datetime(value).isoformat()
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value


def _field_default(f):
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return None


# ===========================================================================
# Base document
# ===========================================================================

@dataclass
class Document:
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Set by the repository that produced the instance; not a dataclass field.
    _repository = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def datetime_fields(cls) -> List[str]:
        return [f.name for f in fields(cls) if "datetime" in str(f.type)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            f.name: copy.deepcopy(getattr(self, f.name))
            for f in fields(self)
            if f.name != "id"
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], doc_id: Optional[str] = None):
        data = data or {}
        dt_fields = set(cls.datetime_fields())
        kwargs = {}
        for f in fields(cls):
            if f.name == "id":
                kwargs["id"] = doc_id if doc_id is not None else data.get("id")
                continue
            value = data.get(f.name)
            if value is None:
                value = _field_default(f)
            elif f.name in dt_fields:
                value = parse_datetime(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_json(self) -> Dict[str, Any]:
        data = {"id": self.id}
        data.update(jsonable(self.to_dict()))
        return data

    # -- Persistence ---------------------------------------------------------

    def bind(self, repository):
        self._repository = repository
        return self

    def _bound(self):
        if self._repository is None or self.id is None:
            raise UnboundDocumentError(
                f"{type(self).__name__} is not attached to a repository"
            )
        return self._repository

    def save(self):
        """Persist every field, re-stamping ``updated_at``."""
        return self._bound().save(self)

    def delete(self) -> bool:
        return self._bound().delete_by_id(self.id)


# ===========================================================================
# 1. User
# ===========================================================================

@dataclass
class User(Document):
    name: str = ""
    email: str = ""
    password: str = ""                # already hashed by the caller
    college: str = ""
    student_id: Optional[str] = None
    branch: str = ""
    semester: Optional[int] = None
    user_type: str = "student"

    def is_admin(self) -> bool:
        return self.user_type == "admin"

    def is_student(self) -> bool:
        return self.user_type == "student"

    def to_json(self) -> Dict[str, Any]:
        data = super().to_json()
        data.pop("password", None)
        return data


# ===========================================================================
# 2. Subject
# ===========================================================================

@dataclass
class Subject(Document):
    name: str = ""
    code: str = ""
    branch: str = ""
    semester: Optional[int] = None
    credits: int = 4
    hours: int = 60
    type: str = "Theory"
    description: str = ""
    is_active: bool = True


# ===========================================================================
# 3. Notice
# ===========================================================================

@dataclass
class Notice(Document):
    title: str = ""
    content: str = ""
    type: str = "general"
    priority: str = "medium"
    target_audience: str = "all"
    target_branch: Optional[str] = None
    is_pinned: bool = False
    expires_at: Optional[datetime] = None
    attachments: List[Any] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_by: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utcnow())


# ===========================================================================
# 4. Material
# ===========================================================================

@dataclass
class Material(Document):
    title: str = ""
    type: str = ""
    url: str = ""
    description: str = ""
    subject_id: Optional[str] = None
    subject_name: str = ""
    subject_code: str = ""
    branch: str = ""
    semester: Optional[int] = None
    resource_type: str = "notes"
    tags: List[str] = field(default_factory=list)
    cover_photo: Optional[str] = None
    downloads: int = 0
    rating: float = 0
    rating_count: int = 0
    uploaded_by: Optional[str] = None


# ===========================================================================
# 5. Quiz
# ===========================================================================

@dataclass
class Quiz(Document):
    title: str = ""
    description: str = ""
    subject_id: Optional[str] = None
    subject_name: str = ""
    subject_code: str = ""
    branch: str = ""
    semester: Optional[int] = None
    questions: List[Dict[str, Any]] = field(default_factory=list)
    time_limit: int = 30              # minutes
    max_attempts: int = 3
    passing_score: float = 60         # percent
    is_active: bool = True
    created_by: Optional[str] = None

    def grade(self, answers: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Score ``[{question_id, selected_answer}]`` against the questions.

        Unknown question ids count as wrong answers.
        """
        by_id = {q.get("id"): q for q in self.questions}
        graded = []
        correct = 0
        for answer in answers:
            question = by_id.get(answer.get("question_id"))
            is_correct = (
                question is not None
                and question.get("correct_answer") == answer.get("selected_answer")
            )
            if is_correct:
                correct += 1
            graded.append(dict(answer, is_correct=is_correct))

        total = len(self.questions)
        percentage = (correct / total) * 100 if total else 0
        return {
            "answers": graded,
            "score": correct,
            "total_questions": total,
            "correct_answers": correct,
            "wrong_answers": len(graded) - correct,
            "percentage": percentage,
            "passed": percentage >= self.passing_score,
        }


# ===========================================================================
# 6. QuizAttempt
# ===========================================================================

@dataclass
class QuizAttempt(Document):
    user_id: Optional[str] = None
    quiz_id: Optional[str] = None
    quiz_title: str = ""
    subject_id: Optional[str] = None
    subject_name: str = ""
    branch: str = ""
    semester: Optional[int] = None
    answers: List[Dict[str, Any]] = field(default_factory=list)
    score: int = 0
    total_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    percentage: float = 0
    passed: bool = False
    time_spent: int = 0               # seconds
    time_limit: int = 30
    attempt_number: int = 1
    status: str = "completed"         # started | completed
    completed_at: Optional[datetime] = None


# ===========================================================================
# 7. Subscription
# ===========================================================================

SUBSCRIPTION_STATUSES = ("active", "expired", "cancelled", "pending")


@dataclass
class Subscription(Document):
    user_id: Optional[str] = None
    semester: Optional[int] = None
    branch: str = ""
    subscription_type: str = "semester"
    status: str = "active"
    start_date: Optional[datetime] = field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    price: float = 0
    payment_id: Optional[str] = None
    payment_method: str = "razorpay"
    features: List[str] = field(
        default_factory=lambda: ["materials", "quizzes", "notices"]
    )

    def is_current(self, now: Optional[datetime] = None) -> bool:
        """Active and ``now`` within ``[start_date, end_date]``."""
        if self.status != "active" or self.start_date is None or self.end_date is None:
            return False
        now = now or utcnow()
        return self.start_date <= now <= self.end_date

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def days_left(self, now: Optional[datetime] = None) -> int:
        if self.end_date is None:
            return 0
        remaining = self.end_date - (now or utcnow())
        # Partial days round up
        return max(0, -(-remaining // timedelta(days=1)))


# ===========================================================================
# 8. Notification
# ===========================================================================

@dataclass
class Notification(Document):
    user_id: Optional[str] = None
    title: str = ""
    message: str = ""
    type: str = "info"
    category: str = "general"
    priority: str = "medium"
    is_read: bool = False
    is_email_sent: bool = False
    is_push_sent: bool = False
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = field(default_factory=utcnow)
    read_at: Optional[datetime] = None

    def mark_as_read(self):
        self.is_read = True
        self.read_at = utcnow()
        return self.save()

    def mark_as_unread(self):
        self.is_read = False
        self.read_at = None
        return self.save()

    def mark_email_sent(self):
        self.is_email_sent = True
        return self.save()

    def mark_push_sent(self):
        self.is_push_sent = True
        return self.save()


# ===========================================================================
# 9. Offer
# ===========================================================================

@dataclass
class Offer(Document):
    title: str = ""
    description: str = ""
    discount_type: str = "percentage"     # percentage | fixed | free
    discount_value: float = 0
    original_price: float = 0
    discounted_price: float = 0
    subscription_type: str = "semester"
    branch: str = "all"
    semester: Any = "all"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    max_uses: Optional[int] = None        # None means unlimited
    used_count: int = 0
    conditions: List[Any] = field(default_factory=list)
    created_by: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active or self.start_date is None or self.end_date is None:
            return False
        now = now or utcnow()
        if not (self.start_date <= now <= self.end_date):
            return False
        return self.max_uses is None or self.used_count < self.max_uses

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.end_date is not None and self.end_date < (now or utcnow())

    def applies_to(self, **criteria) -> bool:
        """True when every criterion matches the offer's value or its 'all' wildcard."""
        for key, wanted in criteria.items():
            if wanted is None:
                continue
            value = getattr(self, key, None)
            if value != "all" and str(value) != str(wanted):
                return False
        return True

    def calculate_discounted_price(self, original_price: Optional[float] = None) -> float:
        price = self.original_price if original_price is None else original_price
        if self.discount_type == "percentage":
            return price * (1 - self.discount_value / 100)
        if self.discount_type == "fixed":
            return max(0, price - self.discount_value)
        if self.discount_type == "free":
            return 0
        return price

    def use(self):
        """Consume one use of the offer.

        Validity is checked again against the stored offer, so stale
        instances cannot push ``used_count`` past ``max_uses``.
        """
        now = utcnow()
        if not self.is_valid(now):
            raise OfferNotValidError(self.id)
        updated = self._bound().increment(
            self.id, "used_count",
            allowed=lambda record: Offer.from_dict(record).is_valid(now))
        if updated is None:
            raise OfferNotValidError(self.id)
        self.used_count = updated.used_count
        self.updated_at = updated.updated_at
        return self


# ===========================================================================
# 10. Progress
# ===========================================================================

@dataclass
class Progress(Document):
    user_id: Optional[str] = None
    content_id: Optional[str] = None
    content_type: str = ""            # material | quiz | course ...
    subject_id: Optional[str] = None
    subject_name: str = ""
    branch: str = ""
    semester: Optional[int] = None
    progress: float = 0               # 0-100
    time_spent: int = 0
    last_position: float = 0
    total_duration: float = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    bookmarked: bool = False
    notes: str = ""
    rating: float = 0

    def mark_completed(self):
        self.progress = 100
        self.completed = True
        self.completed_at = utcnow()
        return self.save()

    def toggle_bookmark(self):
        self.bookmarked = not self.bookmarked
        return self.save()


# ===========================================================================
# 11. Project
# ===========================================================================

@dataclass
class Project(Document):
    title: str = ""
    description: str = ""
    technologies: List[str] = field(default_factory=list)
    github_url: Optional[str] = None
    live_url: Optional[str] = None
    image_url: Optional[str] = None
    student_id: Optional[str] = None
    student_name: str = ""
    branch: str = ""
    semester: Optional[int] = None
    status: str = "pending"           # pending | approved | rejected
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)


# ===========================================================================
# 12. Course
# ===========================================================================

@dataclass
class Course(Document):
    title: str = ""
    description: str = ""
    branch: str = ""
    semester: Optional[int] = None
    subject: str = ""
    poster: Optional[str] = None
    cover_photo: Optional[str] = None
    lectures: List[Dict[str, Any]] = field(default_factory=list)
    created_by: Optional[str] = None


# ===========================================================================
# 13. MaterialRequest
# ===========================================================================

REQUEST_STATUSES = ("pending", "approved", "rejected", "fulfilled")


@dataclass
class MaterialRequest(Document):
    user_id: Optional[str] = None
    user_name: str = ""
    user_email: str = ""
    subject_id: Optional[str] = None
    subject_name: str = ""
    subject_code: str = ""
    branch: str = ""
    semester: Optional[int] = None
    title: str = ""
    description: str = ""
    material_type: str = "pdf"
    priority: str = "medium"          # low | medium | high | urgent
    status: str = "pending"
    admin_notes: str = ""
    fulfilled_by: Optional[str] = None
    fulfilled_at: Optional[datetime] = None
    estimated_fulfillment_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    upvotes: int = 0
    upvoted_by: List[str] = field(default_factory=list)

    def upvote(self, user_id: str):
        """Toggle ``user_id``'s upvote."""
        if user_id in self.upvoted_by:
            self.upvoted_by.remove(user_id)
        else:
            self.upvoted_by.append(user_id)
        self.upvotes = len(self.upvoted_by)
        return self.save()

    def update_status(self, status: str, admin_notes: str = "", fulfilled_by: Optional[str] = None):
        self._bound().check_status(status)
        self.status = status
        if admin_notes:
            self.admin_notes = admin_notes
        if status == "fulfilled":
            self.fulfilled_by = fulfilled_by
            self.fulfilled_at = utcnow()
        return self.save()
