#!/usr/bin/env python3
"""
firedoc CLI Commands

Provides command-line utilities for health checks, code index audits,
index definition files and database provisioning.
These are exposed as console scripts via pyproject.toml.
"""

import argparse
import json
import sys
from typing import Dict, List, Optional

from loguru import logger

from .client import Credentials, create_database
from .codes import create_code_allocator
from .config import load_config
from .document_store import create_document_store
from .exceptions import FiredocError
from .indexes import IndexSet


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--env-file",
        help="Path to .env file with FIREDOC_* settings"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def health_check(argv: Optional[List[str]] = None):
    """Console script for health checking the document store."""
    parser = argparse.ArgumentParser(
        description="Check that the configured document store answers"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "--project",
        help="Google Cloud project (overrides config)"
    )
    parser.add_argument(
        "--database",
        help="Firestore database id (overrides config)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format"
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = load_config(args.env_file, **_overrides(args))
        with create_document_store(config) as store:
            health = store.health_check()
    except FiredocError as e:
        logger.error(f"Health check failed: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(health, indent=2))
    else:
        icon = "✅" if health["status"] == "healthy" else "❌"
        print(f"{icon} {health['backend']}: {health['status']}")
        for key, value in health.items():
            if key not in ("status", "backend"):
                print(f"   {key}: {value}")

    if health["status"] != "healthy":
        sys.exit(1)


def audit(argv: Optional[List[str]] = None):
    """Console script reporting unpaired or mismatched code index entries."""
    parser = argparse.ArgumentParser(
        description="Audit the by-code and by-owner code indexes"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "--project",
        help="Google Cloud project (overrides config)"
    )
    parser.add_argument(
        "--database",
        help="Firestore database id (overrides config)"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results in JSON format"
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = load_config(args.env_file, **_overrides(args))
        with create_document_store(config) as store:
            issues = create_code_allocator(store, config).audit()
    except FiredocError as e:
        logger.error(f"Audit failed: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps([issue.__dict__ for issue in issues], indent=2))
    elif issues:
        print(f"❌ Issues ({len(issues)}):")
        for issue in issues:
            print(f"   • {issue.kind}: {issue.path} ({issue.detail})")
    else:
        print("✅ Code indexes are consistent")

    if issues:
        sys.exit(1)


def indexes(argv: Optional[List[str]] = None):
    """Console script validating and normalizing an index definition file."""
    parser = argparse.ArgumentParser(
        description="Validate a firestore.indexes.json file"
    )
    parser.add_argument(
        "file",
        help="Index definition file to read"
    )
    parser.add_argument(
        "--output",
        "-o",
        help="Write the normalized definitions to this file ('-' for stdout)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        index_set = IndexSet.read_file(args.file)
    except (FiredocError, OSError) as e:
        logger.error(f"Failed to read {args.file}: {e}")
        sys.exit(1)

    duplicates = _count_duplicates(index_set)
    print(f"✅ {args.file}: {len(index_set.indexes)} indexes, "
          f"{len(index_set.field_overrides)} field overrides")
    if duplicates:
        print(f"⚠️  {duplicates} duplicate index definitions")

    if args.output == "-":
        index_set.write_json(sys.stdout)
    elif args.output:
        try:
            index_set.write_file(args.output)
        except OSError as e:
            logger.error(f"Failed to write {args.output}: {e}")
            sys.exit(1)


def create_db(argv: Optional[List[str]] = None):
    """Console script creating a named Firestore database."""
    parser = argparse.ArgumentParser(
        description="Create a named Firestore database with gcloud"
    )
    _add_common_arguments(parser)
    parser.add_argument(
        "database",
        help="Database id to create"
    )
    parser.add_argument(
        "--project",
        help="Google Cloud project (overrides config)"
    )
    parser.add_argument(
        "--access-token-file",
        help="gcloud access token file (overrides config)"
    )
    parser.add_argument(
        "--location",
        default="nam5",
        help="Database location (default: nam5)"
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = load_config(args.env_file, **_overrides(args))
        if not config.project:
            logger.error("No project given; pass --project or set FIREDOC_PROJECT")
            sys.exit(1)
        output = create_database(
            config.project,
            args.database,
            Credentials.from_config(config),
            location=args.location,
        )
    except FiredocError as e:
        logger.error(f"Database creation failed: {e}")
        sys.exit(1)

    for line in output:
        print(line)
    print(f"✅ Database {args.database} created in {config.project}")


def _overrides(args: argparse.Namespace) -> Dict[str, str]:
    names = ("project", "database", "access_token_file")
    return {name: getattr(args, name) for name in names if getattr(args, name, None)}


def _count_duplicates(index_set: IndexSet) -> int:
    seen = []
    duplicates = 0
    for index in index_set.indexes:
        if index in seen:
            duplicates += 1
        else:
            seen.append(index)
    return duplicates


if __name__ == "__main__":
    # If called directly, show help
    print("firedoc CLI - Available commands:")
    print("  firedoc-health     - Check store health")
    print("  firedoc-audit      - Audit code indexes")
    print("  firedoc-indexes    - Validate an index definition file")
    print("  firedoc-create-db  - Create a named Firestore database")
