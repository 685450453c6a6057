"""Path-addressable shared state with change notifications.

The store keeps a tree of JSON values addressed by slash-separated paths
(``rooms/ABCD/books/<owner>/0``). Each write is persisted as one
``StateEntry`` row at the written path; the tree is rebuilt by applying rows
shallowest first, each row replacing the subtree at its path. Writing a path
drops every row below it, so deeper rows are always newer than the rows
above them.

Subscribers are called with the fresh value at their path after every commit
that touches it. Delivery is non-reentrant per thread: a write made from
inside a callback is queued and delivered once the current callback returns.
"""
import json
import threading
from collections import deque
from contextlib import nullcontext

from flask import current_app, has_app_context
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from articphone import db
from articphone.models import StateEntry
from articphone.services.session.errors import StoreUnavailable


def normalize_path(path):
    parts = [p for p in str(path).split('/') if p]
    if not parts:
        raise ValueError('path must not be empty')
    return '/'.join(parts)


def is_related(a, b):
    """True if one path equals or contains the other."""
    return a == b or a.startswith(b + '/') or b.startswith(a + '/')


def _encode(value):
    return json.dumps(value, sort_keys=True)


def _assign(tree, parts, value):
    node = tree
    for key in parts[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[parts[-1]] = value


def _depth(path):
    return path.count('/')


def _extract(tree, parts):
    node = tree
    for key in parts:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


class Subscription:
    """Handle for a registered callback; close it to stop deliveries."""

    def __init__(self, store, path, callback):
        self.store = store
        self.path = path
        self.callback = callback
        self.active = True

    def close(self):
        if self.active:
            self.active = False
            self.store._detach(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class StateStore:

    def __init__(self, app, publisher=None):
        self.app = app
        self.publisher = publisher
        self._subscriptions = []
        self._lock = threading.Lock()
        self._local = threading.local()

    def _context(self):
        # Reuse the caller's app context (and its session) when there is one.
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    # ---- reads ----

    def get(self, path):
        path = normalize_path(path)
        with self._context():
            try:
                return self._read(path)
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise StoreUnavailable(f"read {path} failed: {exc}") from exc

    def _read(self, path):
        parts = path.split('/')
        ancestors = ['/'.join(parts[:i]) for i in range(1, len(parts))]
        clauses = [
            StateEntry.path == path,
            StateEntry.path.startswith(path + '/', autoescape=True),
        ]
        if ancestors:
            clauses.append(StateEntry.path.in_(ancestors))
        rows = StateEntry.query.populate_existing().filter(or_(*clauses)).all()
        if not rows:
            return None
        tree = {}
        for row in sorted(rows, key=lambda r: _depth(r.path)):
            _assign(tree, row.path.split('/'), json.loads(row.value))
        return _extract(tree, parts)

    # ---- writes ----

    def set(self, path, value):
        self.update({path: value})

    def update(self, updates):
        """Write several paths in one transaction (all or nothing)."""
        updates = {normalize_path(p): v for p, v in updates.items()}
        with self._context():
            try:
                for path in sorted(updates, key=_depth):
                    self._write(path, updates[path])
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise StoreUnavailable(f"update failed: {exc}") from exc
        self._notify(list(updates))

    def set_if_absent(self, path, value):
        """Fill a single-assignment cell; returns False if it already holds a value."""
        path = normalize_path(path)
        with self._context():
            try:
                if self._read(path) is not None:
                    return False
                db.session.add(StateEntry(path=path, value=_encode(value)))
                db.session.commit()
            except IntegrityError:
                # lost a concurrent insert on the same path
                db.session.rollback()
                return False
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise StoreUnavailable(f"write {path} failed: {exc}") from exc
        self._notify([path])
        return True

    def compare_and_update(self, path, expected, updates):
        """Apply ``updates`` only if ``path`` currently holds ``expected``.

        ``updates`` must include ``path`` itself; the guard row is rewritten
        with a single conditional UPDATE so two writers racing from the same
        expected value cannot both succeed.
        """
        path = normalize_path(path)
        updates = {normalize_path(p): v for p, v in updates.items()}
        if path not in updates:
            raise ValueError('updates must include the guarded path')
        with self._context():
            try:
                matched = StateEntry.query.filter_by(path=path, value=_encode(expected)).update(
                    {StateEntry.value: _encode(updates[path])}, synchronize_session=False
                )
                if matched != 1:
                    db.session.rollback()
                    return False
                for other in sorted(updates, key=_depth):
                    if other != path:
                        self._write(other, updates[other])
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise StoreUnavailable(f"conditional update of {path} failed: {exc}") from exc
        self._notify(list(updates))
        return True

    def _write(self, path, value):
        StateEntry.query.filter(
            StateEntry.path.startswith(path + '/', autoescape=True)
        ).delete(synchronize_session='fetch')
        if value is None:
            StateEntry.query.filter_by(path=path).delete(synchronize_session='fetch')
        else:
            db.session.merge(StateEntry(path=path, value=_encode(value)))

    # ---- subscriptions ----

    def subscribe(self, path, callback):
        """Register ``callback(value)`` for ``path`` and deliver the current value.

        The first delivery goes through the same queue as change deliveries,
        so writes it makes are delivered after it returns.
        """
        sub = Subscription(self, normalize_path(path), callback)
        with self._lock:
            self._subscriptions.append(sub)
        self._dispatch(sub)
        return sub

    def _detach(self, sub):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _notify(self, paths):
        self._dispatch(list(paths))

    def _dispatch(self, item):
        # item: a list of changed paths, or a Subscription awaiting its first value
        queue = getattr(self._local, 'queue', None)
        if queue is None:
            queue = self._local.queue = deque()
        queue.append(item)
        if getattr(self._local, 'dispatching', False):
            return
        self._local.dispatching = True
        try:
            while queue:
                item = queue.popleft()
                if isinstance(item, Subscription):
                    self._deliver(item)
                    continue
                if self.publisher is not None:
                    try:
                        self.publisher(item)
                    except Exception:
                        self.app.logger.exception(f"[publish-failed] paths={item}")
                with self._lock:
                    targets = [s for s in self._subscriptions if any(is_related(s.path, c) for c in item)]
                for sub in targets:
                    self._deliver(sub)
        finally:
            self._local.dispatching = False
            queue.clear()

    def _deliver(self, sub):
        if not sub.active:
            return
        # The write has committed: a failing subscriber reaches neither the
        # writer nor the other subscribers.
        try:
            sub.callback(self.get(sub.path))
        except Exception:
            self.app.logger.exception(f"[subscriber-failed] path={sub.path}")
