"""
Unit tests for run_transaction and the Transaction context.
"""

import threading

import pytest

from firedoc.document_store import DocumentStore
from firedoc.exceptions import (
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    OperationCanceledError,
    RetryExhaustedError,
    StoreOperationError,
    TransactionConflictError,
    ValidationError,
)


class TestRunTransaction:
    """Tests for commit, abort and retry behaviour."""

    def test_functions_share_one_transaction(self, store):
        store.add("accounts/a", {"credit": 5})
        store.add("accounts/b", {"credit": 0})

        def read(tx):
            return tx.get("accounts/a"), tx.get("accounts/b")

        def move(tx):
            tx.add_or_replace("accounts/a", {"credit": 4})
            tx.add_or_replace("accounts/b", {"credit": 1})
            return "moved"

        assert store.run_transaction(read, move) == "moved"
        assert store.get("accounts/a") == {"credit": 4}
        assert store.get("accounts/b") == {"credit": 1}

    def test_function_error_leaves_no_partial_writes(self, store):
        store.add("accounts/a", {"credit": 5})

        def failing(tx):
            tx.get("accounts/a")
            tx.add_or_replace("accounts/a", {"credit": 0})
            tx.add("accounts/c", {"credit": 9})
            raise KeyError("boom")

        with pytest.raises(KeyError):
            store.run_transaction(failing)
        assert store.get("accounts/a") == {"credit": 5}
        assert not store.exists("accounts/c")

    def test_not_found_propagates(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.run_transaction(lambda tx: tx.get("accounts/missing"))

    def test_create_conflict_is_not_retried(self, store):
        store.add("accounts/a", {"credit": 5})
        attempts = []

        def create(tx):
            attempts.append(1)
            tx.add("accounts/a", {"credit": 1})

        with pytest.raises(DocumentAlreadyExistsError):
            store.run_transaction(create)
        assert len(attempts) == 1

    def test_conflict_retries_whole_unit(self, store):
        store.add("counters/c", {"n": 0})
        attempts = []

        def increment(tx):
            value = tx.get("counters/c")
            attempts.append(value["n"])
            if len(attempts) == 1:
                # concurrent writer lands between our read and commit
                store.add_or_replace("counters/c", {"n": 10})
            tx.add_or_replace("counters/c", {"n": value["n"] + 1})

        store.run_transaction(increment)
        assert attempts == [0, 10]
        assert store.get("counters/c") == {"n": 11}

    def test_query_results_are_validated_at_commit(self, store):
        store.add("seats/1", {"taken": False})
        attempts = []

        def claim_free_seat(tx):
            free = [doc.path for doc in tx.query("seats").where("taken", "==", False).documents()]
            attempts.append(len(free))
            if len(attempts) == 1:
                store.add("seats/2", {"taken": False})
            tx.add_or_replace("claims/x", {"free_seen": len(free)})

        store.run_transaction(claim_free_seat)
        assert attempts == [1, 2]
        assert store.get("claims/x") == {"free_seen": 2}

    def test_retry_exhaustion(self, store):
        store.add("counters/c", {"n": 0})

        def always_contended(tx):
            value = tx.get("counters/c")
            store.add_or_replace("counters/c", {"n": value["n"] + 100})
            tx.add_or_replace("counters/c", {"n": value["n"] + 1})

        with pytest.raises(RetryExhaustedError) as excinfo:
            store.run_transaction(always_contended, max_attempts=3)
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.__cause__, TransactionConflictError)

    def test_cancel_before_attempt(self, store):
        cancel = threading.Event()
        cancel.set()
        calls = []
        with pytest.raises(OperationCanceledError):
            store.run_transaction(lambda tx: calls.append(1), cancel=cancel)
        assert calls == []

    def test_cancel_during_backoff(self, backend):
        store = DocumentStore(backend, transaction_base_delay=5.0, transaction_max_delay=5.0)
        store.add("counters/c", {"n": 0})
        cancel = threading.Event()

        def always_contended(tx):
            value = tx.get("counters/c")
            store.add_or_replace("counters/c", {"n": value["n"] + 1})
            tx.add_or_replace("counters/c", value)

        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            with pytest.raises(OperationCanceledError):
                store.run_transaction(always_contended, max_attempts=1000, cancel=cancel)
        finally:
            timer.cancel()

    def test_cancel_before_commit_discards_writes(self, store):
        cancel = threading.Event()

        def write_then_cancel(tx):
            tx.add_or_replace("accounts/a", {"credit": 1})
            cancel.set()

        with pytest.raises(OperationCanceledError) as excinfo:
            store.run_transaction(write_then_cancel, cancel=cancel)
        assert excinfo.value.operation == "run_transaction"
        assert not store.exists("accounts/a")

    def test_cancel_stops_later_operations(self, store):
        store.add("accounts/a", {"credit": 1})
        cancel = threading.Event()
        reached = []

        def cancel_then_read(tx):
            cancel.set()
            tx.get("accounts/a")
            reached.append(1)

        with pytest.raises(OperationCanceledError) as excinfo:
            store.run_transaction(cancel_then_read, cancel=cancel)
        assert excinfo.value.operation == "transaction.get"
        assert reached == []

    def test_cancel_ends_query_inside_transaction(self, store):
        for i in range(3):
            store.add(f"items/{i}", {"n": i})
        cancel = threading.Event()
        seen = []

        def scan(tx):
            for doc in tx.documents("items"):
                seen.append(doc.path)
                cancel.set()

        with pytest.raises(OperationCanceledError):
            store.run_transaction(scan, cancel=cancel)
        assert seen == ["items/0"]

    def test_requires_a_function(self, store):
        with pytest.raises(ValidationError):
            store.run_transaction()

    def test_zero_attempts_rejected(self, store):
        calls = []
        with pytest.raises(ValidationError) as excinfo:
            store.run_transaction(lambda tx: calls.append(1), max_attempts=0)
        assert excinfo.value.details["value"] == 0
        assert calls == []


class TestTransactionContext:
    """Tests for Transaction operations."""

    def test_reads_must_precede_writes(self, store):
        def write_then_read(tx):
            tx.add_or_replace("a/1", {})
            tx.get("a/1")

        with pytest.raises(StoreOperationError):
            store.run_transaction(write_then_read)

    def test_exists_and_delete(self, store):
        store.add("a/1", {"v": 1})

        def remove(tx):
            assert tx.exists("a/1")
            assert not tx.exists("a/2")
            tx.delete("a/1")

        store.run_transaction(remove)
        assert not store.exists("a/1")

    def test_query_iterator_and_group(self, store):
        store.add("rooms/r/members/x", {"role": "host"})
        store.add("rooms/s/members/y", {"role": "guest"})

        def read(tx):
            hosts = [doc.id for doc in tx.query_group("members").where("role", "==", "host").documents()]
            guests = [doc.id for doc in tx.query_iterator("rooms/s/members", "role", "==", "guest")]
            return hosts, guests

        assert store.run_transaction(read) == (["x"], ["y"])

    def test_typed_get(self, store):
        store.add("a/1", {"v": 1})
        assert store.run_transaction(lambda tx: tx.get("a/1", dict)) == {"v": 1}

    def test_escape(self, store):
        assert store.run_transaction(lambda tx: tx.unescape(tx.escape("x/y"))) == "x/y"
