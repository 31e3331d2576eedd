"""
Local flat-file store: one JSON array file per collection.

Used when Firestore is not available. Reads never raise (a missing or
corrupt file reads as an empty collection); writes propagate ``OSError``.
Every mutation is a read-modify-write of the whole file, serialised through a
lock shared by all stores opened on the same path.
"""

import json
import logging
import os
import random
import string
import tempfile
import threading
from datetime import datetime

from app.firestore_models import parse_datetime, utcnow

logger = logging.getLogger(__name__)

ASCENDING = 'ASCENDING'
DESCENDING = 'DESCENDING'

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_LENGTH = 8

DEFAULT_FILE_MODE = 0o644

_locks = {}
_locks_guard = threading.Lock()


def _lock_for(path):
    key = os.path.abspath(path)
    with _locks_guard:
        if key not in _locks:
            _locks[key] = threading.RLock()
        return _locks[key]


# ---------------------------------------------------------------------------
# Helpers shared with the Firestore adapter
# ---------------------------------------------------------------------------

def encode_value(value):
    """Datetimes become microsecond-precision UTC ISO strings."""
    if isinstance(value, datetime):
        return parse_datetime(value).isoformat(timespec='microseconds')
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def same_value(actual, expected):
    """Equality that, like Firestore, does not treat True as 1."""
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def matches(record, filters):
    return all(same_value(record.get(k), v) for k, v in (filters or {}).items())


def _sort_key(value):
    # None sorts first, the way Firestore puts nulls before other values
    if value is None:
        return (0, 0)
    if isinstance(value, datetime):
        return (1, parse_datetime(value).isoformat(timespec='microseconds'))
    return (1, value)


def sort_records(records, order_by):
    """Sort dicts in place by ``[(field, direction), ...]``, last key first."""
    for name, direction in reversed(list(order_by or ())):
        reverse = direction == DESCENDING
        try:
            records.sort(key=lambda r: _sort_key(r.get(name)), reverse=reverse)
        except TypeError:
            records.sort(key=lambda r: _sort_key(str(r.get(name))), reverse=reverse)
    return records


def apply_cursor(records, start_after=None, limit=None):
    if start_after is not None:
        ids = [r.get('id') for r in records]
        if start_after in ids:
            records = records[ids.index(start_after) + 1:]
    if limit is not None:
        records = records[:limit]
    return records


def generate_id(prefix, taken=()):
    """``prefix`` followed by random lowercase alphanumerics, unique within ``taken``."""
    while True:
        doc_id = (prefix or '') + ''.join(random.choices(_ID_ALPHABET, k=_ID_LENGTH))
        if doc_id not in taken:
            return doc_id


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class JsonFileStore:
    backend = 'local'

    def __init__(self, path, prepend=False):
        self.path = path
        self.prepend = prepend
        self._lock = _lock_for(path)

    def __repr__(self):
        return f'JsonFileStore({self.path!r})'

    # -- Whole-file access --------------------------------------------------

    def read_all(self):
        """Return every record; ``[]`` if the file is missing or unreadable."""
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning('Could not read %s, treating as empty: %s', self.path, e)
            return []
        if not isinstance(data, list):
            logger.warning('%s does not hold a JSON array, treating as empty', self.path)
            return []
        return data

    def write_all(self, records):
        """Atomically overwrite the file with ``records``."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(encode_value(records), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # mkstemp creates 0600 files; keep the collection's previous mode
            os.chmod(tmp_path, self._file_mode())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _file_mode(self):
        try:
            return os.stat(self.path).st_mode & 0o777
        except FileNotFoundError:
            return DEFAULT_FILE_MODE

    # -- Reads ----------------------------------------------------------------

    def get(self, doc_id):
        for record in self.read_all():
            if record.get('id') == doc_id:
                return record
        return None

    def query(self, filters=None, order_by=(), limit=None, start_after=None):
        wanted = encode_value(filters or {})
        records = [r for r in self.read_all() if matches(r, wanted)]
        sort_records(records, order_by)
        return apply_cursor(records, start_after, limit)

    # -- Writes ---------------------------------------------------------------

    def insert(self, record, id_prefix=None):
        """Assign an ID, store the record and return it as persisted."""
        with self._lock:
            records = self.read_all()
            doc = encode_value(dict(record))
            doc['id'] = generate_id(id_prefix, {r.get('id') for r in records})
            if self.prepend:
                records.insert(0, doc)
            else:
                records.append(doc)
            self.write_all(records)
            return doc

    def put(self, doc_id, record):
        """Create or replace the record stored under ``doc_id``."""
        with self._lock:
            records = self.read_all()
            doc = encode_value(dict(record))
            doc['id'] = doc_id
            for i, existing in enumerate(records):
                if existing.get('id') == doc_id:
                    records[i] = doc
                    break
            else:
                if self.prepend:
                    records.insert(0, doc)
                else:
                    records.append(doc)
            self.write_all(records)
            return doc

    def update_by_id(self, doc_id, patch):
        """Merge ``patch`` into the record; ``None`` if there is no such record."""
        with self._lock:
            records = self.read_all()
            for record in records:
                if record.get('id') == doc_id:
                    changes = dict(patch)
                    changes.pop('id', None)
                    changes.setdefault('updated_at', utcnow())
                    record.update(encode_value(changes))
                    self.write_all(records)
                    return record
            return None

    def delete_by_id(self, doc_id):
        with self._lock:
            records = self.read_all()
            kept = [r for r in records if r.get('id') != doc_id]
            if len(kept) == len(records):
                return False
            self.write_all(kept)
            return True

    def increment(self, doc_id, name, amount=1, allowed=None):
        """Add ``amount`` to a numeric field.

        ``allowed(record)`` is checked against the stored record under the
        lock; the increment is skipped and ``None`` returned when it fails.
        """
        with self._lock:
            records = self.read_all()
            for record in records:
                if record.get('id') == doc_id:
                    if allowed is not None and not allowed(dict(record)):
                        return None
                    record[name] = (record.get(name) or 0) + amount
                    record['updated_at'] = encode_value(utcnow())
                    self.write_all(records)
                    return record
            return None

    def update_where(self, filters, patch):
        """Apply ``patch`` to every matching record; returns how many changed."""
        with self._lock:
            records = self.read_all()
            wanted = encode_value(filters or {})
            changes = dict(patch)
            changes.setdefault('updated_at', utcnow())
            changes = encode_value(changes)
            count = 0
            for record in records:
                if matches(record, wanted):
                    record.update(changes)
                    count += 1
            if count:
                self.write_all(records)
            return count

    def delete_where(self, filters):
        with self._lock:
            records = self.read_all()
            wanted = encode_value(filters or {})
            kept = [r for r in records if not matches(r, wanted)]
            removed = len(records) - len(kept)
            if removed:
                self.write_all(kept)
            return removed
