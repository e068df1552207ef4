#!/usr/bin/env python3
"""
firedoc Example - Transactions, Atomic Helpers and Join Codes

Runs against Firestore when FIREDOC_PROJECT is set, otherwise against the
in-process memory backend.
"""

import os

from firedoc import ChangeKind, CodeAllocator, DocumentChange, FiredocConfig, create_document_store
from firedoc.exceptions import FiredocError


def main(config: FiredocConfig):
    """Walk through the main firedoc operations."""

    print("🔥 Initializing firedoc...")
    with create_document_store(config) as store:

        print("\n📊 Health Check:")
        health = store.health_check()
        print(f"Status: {health['status']} ({health['backend']})")

        # Get-or-create converges on one document even under contention
        print("\n📁 Rooms:")
        room = store.atomic_get_or_create("rooms/lobby", lambda: {"name": "Lobby", "players": 0})
        print(f"  - rooms/lobby: {room}")

        def join(room):
            room["players"] += 1

        room = store.atomic_update("rooms/lobby", join)
        print(f"  - after join: {room['players']} player(s)")

        # Several functions commit together or not at all
        def seat(tx):
            tx.add_or_replace("rooms/lobby/seats/1", {"player": "alice"})

        def count(tx):
            tx.add_or_replace("counters/seats", {"taken": 1})

        store.run_transaction(seat, count)
        print(f"  - seats: {[doc.id for doc in store.documents('rooms/lobby/seats')]}")

        # Short codes, unique across the store
        print("\n🔑 Join Codes:")
        codes = CodeAllocator(store, length=config.code_length)
        record = codes.allocate("room", "lobby", payload={"region": "eu"})
        print(f"  - room/lobby -> {record.code}")
        again = codes.allocate("room", "lobby")
        print(f"  - allocate again returns the same code: {again.code == record.code}")
        print(f"  - lookup {record.code}: {codes.lookup_by_code(record.code).owner_key}")

        issues = codes.audit()
        print(f"  - audit: {'consistent' if not issues else f'{len(issues)} issue(s)'}")

        # Handlers end a listen by raising
        print("\n👂 Listening to rooms/lobby:")

        class RoomClosed(Exception):
            pass

        def handler(change: DocumentChange):
            print(f"  - {change.kind.name}: {change.data()}")
            if change.kind == ChangeKind.REMOVED:
                raise RoomClosed()

        store.delete("rooms/lobby")
        try:
            store.doc_listen("rooms/lobby", handler)
        except RoomClosed:
            print("  - room closed")

        codes.release("room", "lobby")
        print(f"\n✅ Released {record.code}")


if __name__ == "__main__":
    print("=" * 60)
    print("🔥 FIREDOC EXAMPLE")
    print("=" * 60)

    if os.getenv("FIREDOC_PROJECT"):
        print("FIREDOC_PROJECT detected - running against Firestore")
        config = FiredocConfig()
    else:
        print("FIREDOC_PROJECT not set - running against the memory backend")
        config = FiredocConfig(backend="memory")

    try:
        main(config)
    except FiredocError as e:
        print(f"❌ Example failed: {e}")

    print("\n" + "=" * 60)
    print("Example completed!")
    print("=" * 60)
