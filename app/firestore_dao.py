"""
Firestore Data Access Object (DAO) layer.

``FirestoreCollection`` wraps one Firestore collection behind the same
interface as ``JsonFileStore``, so repositories do not care which backend
they were given. Filters are conjunctive equality only. Network and auth
errors propagate; repositories decide what to do with them.
"""

import logging

from google.api_core.exceptions import FailedPrecondition, NotFound
from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from app.firestore_models import utcnow
from app.json_store import apply_cursor, sort_records

logger = logging.getLogger(__name__)

# Firestore batches are limited to 500 writes
BATCH_LIMIT = 500

# Optimistic conditional writes give up after this many conflicts
CONDITIONAL_WRITE_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _doc_to_dict(doc_snapshot):
    """Convert a Firestore DocumentSnapshot to a dict with 'id' field."""
    if not doc_snapshot.exists:
        return None
    d = doc_snapshot.to_dict()
    d['id'] = doc_snapshot.id
    return d


def _query_to_list(query_ref):
    """Run a query and return a list of dicts."""
    return [_doc_to_dict(doc) for doc in query_ref.stream()]


class FirestoreCollection:
    backend = 'firestore'

    def __init__(self, client, name):
        self.client = client
        self.name = name

    def __repr__(self):
        return f'FirestoreCollection({self.name!r})'

    @property
    def ref(self):
        return self.client.collection(self.name)

    def _filtered(self, filters):
        q = self.ref
        for name, value in (filters or {}).items():
            q = q.where(filter=FieldFilter(name, '==', value))
        return q

    def _commit_in_batches(self, docs, apply):
        """Call ``apply(batch, doc)`` for each snapshot, committing every 500."""
        batch = self.client.batch()
        count = 0
        for doc in docs:
            apply(batch, doc)
            count += 1
            if count % BATCH_LIMIT == 0:
                batch.commit()
                batch = self.client.batch()
        if count % BATCH_LIMIT != 0:
            batch.commit()
        return count

    # -- Reads ----------------------------------------------------------------

    def get(self, doc_id):
        """Get a document by ID. Returns dict or None."""
        return _doc_to_dict(self.ref.document(doc_id).get())

    def query(self, filters=None, order_by=(), limit=None, start_after=None):
        """Equality-filtered query with optional ordering and cursor pagination.

        When the ordering needs a composite index that does not exist, the
        query is re-run unordered and sorted in memory.
        """
        q = self._filtered(filters)
        for name, direction in order_by or ():
            q = q.order_by(name, direction=direction)
        if start_after:
            doc = self.ref.document(start_after).get()
            if doc.exists:
                q = q.start_after(doc)
        if limit is not None:
            q = q.limit(limit)
        try:
            return _query_to_list(q)
        except FailedPrecondition as e:
            if not order_by:
                raise
            logger.warning('Index missing for %s ordered by %s, sorting in memory: %s',
                           self.name, list(order_by), e)
        records = sort_records(_query_to_list(self._filtered(filters)), order_by)
        return apply_cursor(records, start_after, limit)

    # -- Writes ---------------------------------------------------------------

    def insert(self, record, id_prefix=None):
        """Create a document with a Firestore auto-ID and return it with 'id'."""
        ref = self.ref.document()
        data = dict(record)
        data.pop('id', None)
        ref.set(data)
        data['id'] = ref.id
        return data

    def put(self, doc_id, record):
        """Create or replace the document stored under ``doc_id``."""
        data = dict(record)
        data.pop('id', None)
        self.ref.document(doc_id).set(data)
        data['id'] = doc_id
        return data

    def update_by_id(self, doc_id, patch):
        """Update fields on an existing document. Returns the new dict or None."""
        data = dict(patch)
        data.pop('id', None)
        data.setdefault('updated_at', utcnow())
        ref = self.ref.document(doc_id)
        try:
            ref.update(data)
        except NotFound:
            return None
        return _doc_to_dict(ref.get())

    def delete_by_id(self, doc_id):
        ref = self.ref.document(doc_id)
        if not ref.get().exists:
            return False
        ref.delete()
        return True

    def increment(self, doc_id, name, amount=1, allowed=None):
        """Atomically add ``amount`` to a numeric field.

        With ``allowed``, the document is read, checked, and written back only
        if nobody changed it in between; a concurrent write re-runs the check.
        """
        ref = self.ref.document(doc_id)
        if allowed is not None:
            return self._increment_if(ref, name, amount, allowed)
        try:
            ref.update({name: firestore.Increment(amount), 'updated_at': utcnow()})
        except NotFound:
            return None
        return _doc_to_dict(ref.get())

    def _increment_if(self, ref, name, amount, allowed):
        for attempt in Retrying(retry=retry_if_exception_type(FailedPrecondition),
                                stop=stop_after_attempt(CONDITIONAL_WRITE_ATTEMPTS),
                                reraise=True):
            with attempt:
                snapshot = ref.get()
                current = _doc_to_dict(snapshot)
                if current is None or not allowed(current):
                    return None
                option = self.client.write_option(last_update_time=snapshot.update_time)
                ref.update({name: firestore.Increment(amount), 'updated_at': utcnow()},
                           option=option)
        return _doc_to_dict(ref.get())

    def update_where(self, filters, patch):
        data = dict(patch)
        data.setdefault('updated_at', utcnow())
        docs = self._filtered(filters).stream()
        return self._commit_in_batches(docs, lambda batch, doc: batch.update(doc.reference, data))

    def delete_where(self, filters):
        docs = self._filtered(filters).stream()
        return self._commit_in_batches(docs, lambda batch, doc: batch.delete(doc.reference))
