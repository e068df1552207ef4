"""
Unit tests for the Firestore backend with a mocked client.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as gexc

from firedoc.backends import firestore as firestore_backend
from firedoc.backends.base import ChangeKind
from firedoc.backends.firestore import FirestoreBackend, translate_error
from firedoc.document_store import DocumentStore
from firedoc.exceptions import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    OperationCanceledError,
    StoreOperationError,
    TransactionConflictError,
    TransientStoreError,
)
from firedoc.listen import collection_listen, doc_listen
from firedoc.query import Cursor, Direction, FieldFilter, Ordering, QuerySpec


def snapshot(path, data):
    return SimpleNamespace(
        reference=SimpleNamespace(path=path),
        exists=data is not None,
        to_dict=lambda: dict(data or {}),
        create_time=None,
        update_time=None,
    )


def chainable_query():
    query = MagicMock()
    for name in ("where", "order_by", "select", "start_at", "start_after", "end_at", "end_before",
                 "offset", "limit", "limit_to_last"):
        getattr(query, name).return_value = query
    return query


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def backend(client):
    return FirestoreBackend(client)


class TestTranslateError:
    """Tests for Google API error translation."""

    @pytest.mark.parametrize("error, expected", [
        (gexc.NotFound("gone"), DocumentNotFoundError),
        (gexc.AlreadyExists("dup"), DocumentAlreadyExistsError),
        (gexc.Aborted("contention"), TransactionConflictError),
        (gexc.Cancelled("stop"), OperationCanceledError),
        (gexc.ServiceUnavailable("down"), TransientStoreError),
        (gexc.DeadlineExceeded("slow"), TransientStoreError),
        (gexc.PermissionDenied("no"), StoreOperationError),
    ])
    def test_mapping(self, error, expected):
        translated = translate_error(error, "get", "a/b")
        assert type(translated) is expected
        assert translated.path == "a/b"


class TestDocumentOperations:
    """Tests for single-document calls."""

    def test_get_existing(self, client, backend):
        client.document.return_value.get.return_value = snapshot("users/alice", {"name": "Alice"})
        doc = backend.get("users/alice")
        assert doc.path == "users/alice"
        assert doc.to_dict() == {"name": "Alice"}
        client.document.assert_called_with("users/alice")

    def test_get_missing(self, client, backend):
        client.document.return_value.get.return_value = snapshot("users/alice", None)
        assert backend.get("users/alice") is None

    def test_create_conflict(self, client, backend):
        client.document.return_value.create.side_effect = gexc.AlreadyExists("exists")
        with pytest.raises(DocumentAlreadyExistsError) as excinfo:
            backend.create("users/alice", {})
        assert isinstance(excinfo.value.__cause__, gexc.AlreadyExists)

    def test_transient_failure(self, client, backend):
        client.document.return_value.set.side_effect = gexc.ServiceUnavailable("down")
        with pytest.raises(TransientStoreError):
            backend.set("users/alice", {})

    def test_request_timeout_is_passed_through(self, client):
        backend = FirestoreBackend(client, timeout=2.5)
        document = client.document.return_value
        document.get.return_value = snapshot("users/alice", {"name": "Alice"})
        client.collections.return_value = []

        backend.get("users/alice")
        backend.set("users/alice", {"name": "Alice"})
        backend.create("users/bob", {})
        backend.delete("users/alice")
        backend.list_collections()

        document.get.assert_called_once_with(timeout=2.5)
        document.set.assert_called_once_with({"name": "Alice"}, timeout=2.5)
        document.create.assert_called_once_with({}, timeout=2.5)
        document.delete.assert_called_once_with(timeout=2.5)
        client.collections.assert_called_once_with(timeout=2.5)

    def test_no_timeout_uses_client_default(self, client, backend):
        client.document.return_value.get.return_value = snapshot("users/alice", None)
        backend.get("users/alice")
        client.document.return_value.get.assert_called_once_with()

    def test_list_collections(self, client, backend):
        client.collections.return_value = [SimpleNamespace(id="rooms"), SimpleNamespace(id="users")]
        assert backend.list_collections() == ["rooms", "users"]


class TestBuildQuery:
    """Tests for QuerySpec translation."""

    def test_full_spec(self, client, backend):
        query = chainable_query()
        client.collection.return_value = query
        spec = QuerySpec(
            collection="people",
            filters=(FieldFilter("tags", "array-contains", "a"), FieldFilter("city", "in", ("oslo", "rome"))),
            orders=(Ordering("age", Direction.DESCENDING),),
            limit=5,
            offset=2,
            start=Cursor((30,), inclusive=False),
            end=Cursor((10,), inclusive=True),
            projection=("name",),
        )

        assert backend.build_query(spec) is query
        client.collection.assert_called_once_with("people")

        filters = [call.kwargs["filter"] for call in query.where.call_args_list]
        assert [(f.field_path, f.op_string, f.value) for f in filters] == [
            ("tags", "array_contains", "a"),
            ("city", "in", ["oslo", "rome"]),
        ]
        query.order_by.assert_called_once_with("age", direction="DESCENDING")
        query.select.assert_called_once_with(["name"])
        query.start_after.assert_called_once_with([30])
        query.end_at.assert_called_once_with([10])
        query.offset.assert_called_once_with(2)
        query.limit.assert_called_once_with(5)

    def test_collection_group_limit_to_last(self, client, backend):
        query = chainable_query()
        client.collection_group.return_value = query
        spec = QuerySpec(collection="members", all_descendants=True,
                         orders=(Ordering("age"),), limit=3, limit_to_last=True)

        backend.build_query(spec)
        client.collection_group.assert_called_once_with("members")
        query.limit_to_last.assert_called_once_with(3)

    def test_run_query_streams_documents(self, client, backend):
        query = chainable_query()
        query.stream.return_value = iter([snapshot("people/ann", {"name": "ann"})])
        client.collection.return_value = query

        docs = list(backend.run_query(QuerySpec(collection="people")))
        assert [doc.path for doc in docs] == ["people/ann"]

    def test_query_timeout(self, client):
        backend = FirestoreBackend(client, timeout=4)
        query = chainable_query()
        query.stream.return_value = iter([])
        client.collection.return_value = query

        assert list(backend.run_query(QuerySpec(collection="people"))) == []
        query.stream.assert_called_once_with(transaction=None, timeout=4)


class TestRunAttempt:
    """Tests for single-attempt transactions."""

    def test_passes_writes_to_native_transaction(self, client, backend):
        native = client.transaction.return_value

        def fn(tx):
            tx.create("a/1", {"v": 1})
            tx.delete("a/2")
            return "done"

        with patch.object(firestore_backend.firestore, "transactional", lambda fn: fn):
            assert backend.run_attempt(fn) == "done"

        client.transaction.assert_called_once_with(max_attempts=1)
        native.create.assert_called_once_with(client.document.return_value, {"v": 1})
        native.delete.assert_called_once_with(client.document.return_value)

    def test_aborted_commit_becomes_conflict(self, backend):
        def aborting(fn):
            def call(transaction):
                try:
                    raise gexc.Aborted("too much contention")
                except gexc.Aborted as e:
                    raise ValueError("Failed to commit transaction") from e
            return call

        with patch.object(firestore_backend.firestore, "transactional", aborting):
            with pytest.raises(TransactionConflictError):
                backend.run_attempt(lambda tx: None)

    def test_other_value_errors_propagate(self, backend):
        def broken(tx):
            raise ValueError("caller bug")

        with patch.object(firestore_backend.firestore, "transactional", lambda fn: fn):
            with pytest.raises(ValueError, match="caller bug"):
                backend.run_attempt(broken)

    def test_api_errors_are_translated(self, backend):
        def unavailable(fn):
            def call(transaction):
                raise gexc.ServiceUnavailable("down")
            return call

        with patch.object(firestore_backend.firestore, "transactional", unavailable):
            with pytest.raises(TransientStoreError):
                backend.run_attempt(lambda tx: None)


class TestWatch:
    """Tests for snapshot listeners."""

    def test_change_kind_mapping(self):
        assert firestore_backend._change_kind(SimpleNamespace(name="ADDED")) == ChangeKind.ADDED
        assert firestore_backend._change_kind(SimpleNamespace(name="MODIFIED")) == ChangeKind.MODIFIED
        assert firestore_backend._change_kind(SimpleNamespace(name="WEIRD")) == ChangeKind.ERROR

    def test_watch_query_delivers_events(self, client, backend):
        query = chainable_query()
        client.collection.return_value = query
        events = []

        subscription = backend.watch_query(QuerySpec(collection="rooms"), events.append, pytest.fail)
        on_snapshot = query.on_snapshot.call_args.args[0]

        doc = snapshot("rooms/a", {"open": True})
        on_snapshot([doc], [SimpleNamespace(type=SimpleNamespace(name="ADDED"), document=doc)], None)

        assert len(events) == 1
        assert events[0].changes[0][0] == ChangeKind.ADDED
        assert events[0].documents[0].path == "rooms/a"
        assert subscription.is_active
        subscription.unsubscribe()
        query.on_snapshot.return_value.unsubscribe.assert_called_once_with()

    def test_closed_watch_is_inactive(self, client, backend):
        client.document.return_value.on_snapshot.return_value = SimpleNamespace(
            is_active=False, unsubscribe=MagicMock())
        subscription = backend.watch_document("rooms/a", pytest.fail, pytest.fail)
        assert not subscription.is_active

    def test_dead_stream_ends_doc_listen(self, client, backend):
        watch = SimpleNamespace(is_active=False, unsubscribe=MagicMock())
        client.document.return_value.on_snapshot.return_value = watch
        store = DocumentStore(backend)

        with pytest.raises(StoreOperationError, match="stream closed"):
            doc_listen(store, "rooms/a", pytest.fail, poll_interval=0.01)
        watch.unsubscribe.assert_called_once_with()

    def test_dead_stream_ends_collection_listen(self, client, backend):
        query = chainable_query()
        client.collection.return_value = query
        watch = SimpleNamespace(is_active=False, unsubscribe=MagicMock())
        query.on_snapshot.return_value = watch
        store = DocumentStore(backend)

        with pytest.raises(StoreOperationError, match="stream closed"):
            collection_listen(store, "rooms", pytest.fail, poll_interval=0.01)
        watch.unsubscribe.assert_called_once_with()

    def test_watch_document_reports_callback_errors(self, client, backend):
        errors = []

        def callback(doc):
            raise RuntimeError("handler failed")

        backend.watch_document("rooms/a", callback, errors.append)
        on_snapshot = client.document.return_value.on_snapshot.call_args.args[0]
        on_snapshot([snapshot("rooms/a", None)], [], None)

        assert isinstance(errors[0], RuntimeError)
