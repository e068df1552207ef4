"""
Unit tests for the query builder and its evaluation on the memory backend.
"""

import pytest

from firedoc.exceptions import ValidationError
from firedoc.query import DESC, Direction, Ordering


@pytest.fixture
def people(store):
    rows = [
        ("ann", {"name": "ann", "age": 31, "tags": ["a", "b"], "city": "oslo"}),
        ("bob", {"name": "bob", "age": 25, "tags": ["b"], "city": "rome"}),
        ("cat", {"name": "cat", "age": 40, "tags": [], "city": "oslo"}),
        ("dan", {"name": "dan", "age": 25, "tags": ["c"], "city": "lima"}),
        ("eve", {"name": "eve", "tags": ["a"]}),
    ]
    for doc_id, data in rows:
        store.add(f"people/{doc_id}", data)
    return store


def names(iterator):
    return [doc.get("name") for doc in iterator]


class TestQueryBuilder:
    """Tests for Query immutability and client-side validation."""

    def test_clauses_return_new_queries(self, store):
        base = store.query("people")
        filtered = base.where("age", ">", 30)
        ordered = filtered.order_by("age")

        assert base.spec.filters == ()
        assert len(filtered.spec.filters) == 1
        assert filtered.spec.orders == ()
        assert ordered.spec.orders == (Ordering("age", Direction.ASCENDING),)

    def test_unknown_operator_rejected(self, store):
        with pytest.raises(ValidationError):
            store.query("people").where("age", "~=", 1)

    def test_disjunction_limit(self, store):
        query = store.query("people")
        query.where("city", "in", [str(i) for i in range(10)])
        with pytest.raises(ValidationError):
            query.where("city", "in", [str(i) for i in range(11)])
        with pytest.raises(ValidationError):
            query.where("tags", "array-contains-any", [])
        with pytest.raises(ValidationError):
            query.where("city", "not-in", "oslo")

    def test_negative_limit_rejected(self, store):
        with pytest.raises(ValidationError):
            store.query("people").limit(-1)

    def test_limit_to_last_requires_ordering(self, people):
        query = people.query("people").limit_to_last(2)
        with pytest.raises(ValidationError):
            query.documents()

    def test_cursor_needs_matching_orderings(self, people):
        with pytest.raises(ValidationError):
            people.query("people").start_at(25).documents()
        with pytest.raises(ValidationError):
            people.query("people").order_by("age").start_at(25, "bob").documents()

    def test_query_is_lazy(self, backend, store):
        query = store.query("people").where("age", ">", 1)
        backend.close()
        # building never touches the backend
        query.order_by("age").limit(3)


class TestQueryEvaluation:
    """Tests for query results."""

    def test_equality_filter(self, people):
        assert sorted(names(people.query_iterator("people", "city", "==", "oslo"))) == ["ann", "cat"]

    def test_missing_field_never_matches(self, people):
        assert "eve" not in names(people.query("people").where("age", "!=", 25).documents())

    def test_in_and_not_in(self, people):
        assert sorted(names(people.query("people").where("city", "in", ["rome", "lima"]).documents())) == ["bob", "dan"]
        assert sorted(names(people.query("people").where("city", "not-in", ["rome", "lima"]).documents())) == ["ann", "cat"]

    def test_array_operators(self, people):
        assert sorted(names(people.query("people").where("tags", "array-contains", "a").documents())) == ["ann", "eve"]
        result = people.query("people").where("tags", "array-contains-any", ["b", "c"]).documents()
        assert sorted(names(result)) == ["ann", "bob", "dan"]

    def test_ordering_is_stable_across_fields(self, people):
        query = people.query("people").order_by("age").order_by("name", DESC)
        assert names(query.documents()) == ["dan", "bob", "ann", "cat"]

    def test_limit_and_offset(self, people):
        query = people.query("people").order_by("age").offset(1).limit(2)
        assert names(query.documents()) == ["dan", "ann"]

    def test_limit_to_last(self, people):
        query = people.query("people").order_by("age").limit_to_last(2)
        assert names(query.documents()) == ["ann", "cat"]

    def test_cursors(self, people):
        query = people.query("people").order_by("age")
        assert names(query.start_after(25).documents()) == ["ann", "cat"]
        assert names(query.start_at(31).end_before(40).documents()) == ["ann"]
        assert names(query.end_at(25).documents()) == ["bob", "dan"]

    def test_projection(self, people):
        doc = next(people.query("people").where("name", "==", "ann").select("age").documents())
        assert doc.to_dict() == {"age": 31}

    def test_collection_group(self, store):
        store.add("rooms/a/members/x", {"name": "x"})
        store.add("rooms/b/members/y", {"name": "y"})
        store.add("members/z", {"name": "z"})
        assert sorted(names(store.query_group("members").documents())) == ["x", "y", "z"]
        assert names(store.query("rooms/a/members").documents()) == ["x"]

    def test_collection_group_query_shorthand(self, store):
        store.add("rooms/a/members/x", {"name": "x", "role": "host", "age": 3})
        store.add("rooms/b/members/y", {"name": "y", "role": "host", "age": 9})
        store.add("rooms/b/members/w", {"name": "w", "role": "guest", "age": 9})
        result = store.collection_group_query("members", [("role", "==", "host"), ("age", ">", 5)])
        assert names(result) == ["y"]


class TestDocumentIterator:
    """Tests for DocumentIterator semantics."""

    def test_exhaustion_raises_stop_iteration(self, people):
        iterator = people.query("people").where("name", "==", "bob").documents()
        path, value = iterator.next_doc()
        assert path == "people/bob"
        assert value["age"] == 25
        with pytest.raises(StopIteration):
            iterator.next_doc()
        with pytest.raises(StopIteration):
            next(iterator)

    def test_stop_ends_iteration(self, people):
        with people.documents("people") as iterator:
            next(iterator)
        with pytest.raises(StopIteration):
            next(iterator)
