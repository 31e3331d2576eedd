"""
Generic repository shared by every entity.

A repository is configured per entity by its class attributes (model,
collection, ID prefix, default ordering) and is given a store at
construction time: a ``FirestoreCollection`` or a ``JsonFileStore``.

Reads never raise. A store failure is logged and reported as a failed
``ReadResult``; the plain finders return the result's fallback value
(``None`` or ``[]``). Writes let store errors propagate.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from app.firestore_models import Document, parse_datetime, utcnow
from app.json_store import DESCENDING, encode_value, matches

logger = logging.getLogger(__name__)

NEWEST_FIRST = (('created_at', DESCENDING),)


@dataclass(frozen=True)
class ReadResult:
    """Outcome of a read: found, confirmed empty, or failed with a cause."""
    value: Any = None
    cause: Optional[BaseException] = None

    @classmethod
    def success(cls, value):
        return cls(value=value)

    @classmethod
    def failure(cls, cause, fallback=None):
        return cls(value=fallback, cause=cause)

    @property
    def ok(self) -> bool:
        return self.cause is None

    @property
    def empty(self) -> bool:
        return self.ok and not self.value

    @property
    def status(self) -> str:
        if not self.ok:
            return 'error'
        return 'empty' if self.empty else 'found'


class Repository:
    model = Document
    collection = None
    id_prefix = None
    ordering = NEWEST_FIRST
    prepend = False
    # Fields forced on every create regardless of input
    create_overrides = {}

    def __init__(self, store):
        self.store = store

    def __repr__(self):
        return f'{type(self).__name__}({self.store!r})'

    @property
    def backend(self):
        return self.store.backend

    # -- Hooks ----------------------------------------------------------------

    def clean(self, data, partial=False):
        """Validate and coerce input; ``partial`` is True for patches."""
        return data

    def _wrap(self, record):
        if record is None:
            return None
        return self.model.from_dict(record, record.get('id')).bind(self)

    def _read(self, action, fallback, fn, *args, **kwargs):
        try:
            return ReadResult.success(fn(*args, **kwargs))
        except Exception as e:
            logger.warning('%s on %s failed, returning %r: %s',
                           action, self.collection, fallback, e)
            return ReadResult.failure(e, fallback)

    @staticmethod
    def _next_stamp(previous):
        """Now, or just after ``previous`` if the clock has not moved past it."""
        stamp = utcnow()
        previous = parse_datetime(previous)
        if previous is not None and stamp <= previous:
            stamp = previous + timedelta(microseconds=1)
        return stamp

    # -- Create ---------------------------------------------------------------

    def create(self, data):
        """Default-fill ``data``, stamp it, and persist it to the active store."""
        data = self.clean(dict(data))
        record = self.model.from_dict(data).to_dict()
        record.update(self.create_overrides)
        stamp = utcnow()
        record['created_at'] = stamp
        record['updated_at'] = stamp
        return self._wrap(self.store.insert(record, self.id_prefix))

    # -- Reads ----------------------------------------------------------------

    def find_by_id_result(self, doc_id):
        if not doc_id:
            return ReadResult.success(None)
        return self._read('find_by_id', None,
                          lambda: self._wrap(self.store.get(doc_id)))

    def find_by_id(self, doc_id):
        return self.find_by_id_result(doc_id).value

    def get(self, doc_id):
        """Like ``find_by_id`` but store errors propagate. For use by mutations."""
        return self._wrap(self.store.get(doc_id))

    def fetch(self, filters=None, order_by=()):
        """Like ``find`` but store errors propagate. For use by mutations."""
        return [self._wrap(r) for r in self.store.query(filters, order_by=order_by)]

    def find_result(self, filters=None, order_by=None, limit=None, start_after=None):
        """Equality-filtered find.

        ``order_by=None`` applies the entity's default ordering; pass ``()``
        for store order.
        """
        filters = dict(filters or {})
        if order_by is None:
            order_by = self.ordering

        def run():
            if 'id' in filters:
                doc = self.store.get(filters.pop('id'))
                if doc is None or not matches(encode_value(doc), encode_value(filters)):
                    return []
                return [self._wrap(doc)]
            records = self.store.query(filters, order_by=order_by,
                                       limit=limit, start_after=start_after)
            return [self._wrap(r) for r in records]

        return self._read('find', [], run)

    def find(self, filters=None, order_by=None, limit=None, start_after=None):
        return self.find_result(filters, order_by, limit, start_after).value

    def find_one(self, filters=None, order_by=None):
        found = self.find(filters, order_by=order_by, limit=1)
        return found[0] if found else None

    def count(self, filters=None):
        return len(self.find(filters, order_by=()))

    def distinct(self, name, filters=None):
        values = []
        for doc in self.find(filters, order_by=()):
            value = getattr(doc, name, None)
            if value is not None and value not in values:
                values.append(value)
        return sorted(values, key=str)

    # -- Updates --------------------------------------------------------------

    def find_by_id_and_update(self, doc_id, patch):
        """Patch a record by ID. Returns the updated instance or None."""
        current = self.store.get(doc_id)
        if current is None:
            return None
        changes = self.clean(dict(patch), partial=True)
        changes.pop('id', None)
        changes.pop('created_at', None)
        changes['updated_at'] = self._next_stamp(current.get('updated_at'))
        return self._wrap(self.store.update_by_id(doc_id, changes))

    def save(self, instance):
        """Persist every field of ``instance`` as a patch."""
        record = instance.to_dict()
        record.pop('created_at', None)
        record['updated_at'] = self._next_stamp(instance.updated_at)
        stored = self.store.update_by_id(instance.id, record)
        if stored is None:
            return None
        instance.updated_at = parse_datetime(stored.get('updated_at'))
        return instance

    def increment(self, doc_id, name, amount=1, allowed=None):
        """``allowed`` vets the stored record before the write; None if refused."""
        return self._wrap(self.store.increment(doc_id, name, amount, allowed=allowed))

    # -- Deletes --------------------------------------------------------------

    def delete_by_id(self, doc_id):
        return self.store.delete_by_id(doc_id)

    def find_by_id_and_delete(self, doc_id):
        """Delete a record by ID, returning it as it was, or None."""
        doc = self.get(doc_id)
        if doc is None or not self.store.delete_by_id(doc_id):
            return None
        return doc

    # -- Statistics helpers ---------------------------------------------------

    def all(self, filters=None):
        """Full scan in store order."""
        return self.find(filters, order_by=())
