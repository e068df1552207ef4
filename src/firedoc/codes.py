"""
Unique short code allocation for firedoc library.

A code record is stored twice: under its code (by-code/{code}) and under
its owner (by-owner/{namespace}_{owner_key}). Both entries are always
written and deleted in the same transaction, so an observer sees both or
neither.

Example:
    allocator = CodeAllocator(store)
    record = allocator.allocate("lobby", "user-42", {"role": "host"})
    print(record.code)  # e.g. "583920"
    allocator.release("lobby", "user-42")
"""

import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from .exceptions import (
    CodespaceExhaustedError,
    DocumentNotFoundError,
    FiredocError,
    ValidationError,
)
from .utils import escape, timing_context

DEFAULT_CODE_LENGTH = 6
DEFAULT_CODE_ALPHABET = "0123456789"
DEFAULT_MAX_ATTEMPTS = 20
BY_CODE_COLLECTION = "by-code"
BY_OWNER_COLLECTION = "by-owner"

RandomSource = Callable[[int], bytes]


class CodeRecord(BaseModel):
    """An allocated code and the owner it belongs to."""
    code: str
    namespace: str
    owner_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class AuditIssue:
    """An index entry without a matching partner."""
    kind: str
    path: str
    detail: str


class CodeAllocator:
    """
    Allocates short random codes that are unique within the store.

    Every method takes an optional tx to join a caller's transaction;
    without one it runs its own.
    """

    def __init__(
        self,
        store: Any,
        length: int = DEFAULT_CODE_LENGTH,
        alphabet: str = DEFAULT_CODE_ALPHABET,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        random_source: Optional[RandomSource] = None,
        by_code_collection: str = BY_CODE_COLLECTION,
        by_owner_collection: str = BY_OWNER_COLLECTION,
    ):
        """
        Initialize CodeAllocator.

        Args:
            store: DocumentStore holding the code records
            length: Number of characters per code
            alphabet: Characters a code is drawn from
            max_attempts: Colliding draws tolerated per allocation
            random_source: Returns n random bytes (defaults to secrets.token_bytes)
            by_code_collection: Collection indexing records by code
            by_owner_collection: Collection indexing records by owner
        """
        if length < 1:
            raise ValidationError("Code length must be positive", field="length", value=length)
        if not alphabet or len(alphabet) > 256 or len(set(alphabet)) != len(alphabet):
            raise ValidationError("Alphabet must hold 1-256 distinct characters", field="alphabet", value=alphabet)
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts", value=max_attempts)

        self.store = store
        self.length = length
        self.alphabet = alphabet
        self.max_attempts = max_attempts
        self.random_source = random_source or secrets.token_bytes
        self.by_code_collection = by_code_collection
        self.by_owner_collection = by_owner_collection

    # ==========================================
    # Paths and code generation
    # ==========================================

    def by_code_path(self, code: str) -> str:
        return f"{self.by_code_collection}/{escape(code)}"

    def by_owner_path(self, namespace: str, owner_key: str) -> str:
        return f"{self.by_owner_collection}/{escape(namespace)}_{escape(owner_key)}"

    def new_code(self) -> str:
        """
        Draw one candidate code from the random source.

        Returns:
            str: Code of self.length characters from self.alphabet
        """
        raw = self.random_source(self.length)
        if len(raw) != self.length:
            raise FiredocError(f"Short read from random source: got {len(raw)} expected {self.length}")
        return ''.join(self.alphabet[b % len(self.alphabet)] for b in raw)

    def _check_owner(self, namespace: str, owner_key: str) -> None:
        if not namespace or '_' in namespace:
            # '_' separates namespace from owner key in the by-owner path
            raise ValidationError("Namespace must be non-empty and must not contain '_'",
                                  field="namespace", value=namespace)
        if not owner_key:
            raise ValidationError("Owner key must be non-empty", field="owner_key", value=owner_key)

    def _run(self, fn: Callable[[Any], Any], tx: Any = None) -> Any:
        if tx is not None:
            return fn(tx)
        return self.store.run_transaction(fn)

    # ==========================================
    # Allocation
    # ==========================================

    def allocate(self, namespace: str, owner_key: str, payload: Optional[Dict[str, Any]] = None,
                 tx: Any = None) -> CodeRecord:
        """
        Allocate a code for (namespace, owner_key), or return the existing one.

        Args:
            namespace: Scope of the owner key
            owner_key: Identifies the owner within the namespace
            payload: Opaque data stored with the record
            tx: Optional enclosing transaction

        Returns:
            CodeRecord: Newly allocated or previously allocated record

        Raises:
            CodespaceExhaustedError: If max_attempts draws all collided
        """
        self._check_owner(namespace, owner_key)
        owner_path = self.by_owner_path(namespace, owner_key)

        def allocate_code(tx):
            existing = self._find(tx, owner_path)
            if existing is not None:
                logger.debug(f"Owner {namespace}/{owner_key} already holds code {existing.code}")
                return existing

            for attempt in range(self.max_attempts):
                code = self.new_code()
                code_path = self.by_code_path(code)
                if tx.exists(code_path):
                    logger.debug(f"Code collision on attempt {attempt + 1}/{self.max_attempts} in {namespace}")
                    continue

                record = CodeRecord(code=code, namespace=namespace, owner_key=owner_key, payload=dict(payload or {}))
                tx.add(code_path, record)
                tx.add(owner_path, record)
                return record

            logger.error(f"No free code for {namespace}/{owner_key} after {self.max_attempts} draws")
            raise CodespaceExhaustedError(
                f"Failed to generate a unique code after {self.max_attempts} attempts",
                namespace=namespace,
                attempts=self.max_attempts
            )

        with timing_context(f"allocate(namespace={namespace}, owner_key={owner_key})"):
            record = self._run(allocate_code, tx)
        logger.info(f"Code {record.code} assigned to {namespace}/{owner_key}")
        return record

    # ==========================================
    # Lookup
    # ==========================================

    def _find(self, tx: Any, path: str) -> Optional[CodeRecord]:
        try:
            return tx.get(path, CodeRecord)
        except DocumentNotFoundError:
            return None

    def lookup_by_code(self, code: str, tx: Any = None) -> CodeRecord:
        """
        Raises:
            DocumentNotFoundError: If no record holds the code
        """
        path = self.by_code_path(code)
        return self._run(lambda tx: tx.get(path, CodeRecord), tx)

    def lookup_by_owner(self, namespace: str, owner_key: str, tx: Any = None) -> CodeRecord:
        """
        Raises:
            DocumentNotFoundError: If the owner holds no code
        """
        path = self.by_owner_path(namespace, owner_key)
        return self._run(lambda tx: tx.get(path, CodeRecord), tx)

    def find_by_owner(self, namespace: str, owner_key: str, tx: Any = None) -> Optional[CodeRecord]:
        path = self.by_owner_path(namespace, owner_key)
        return self._run(lambda tx: self._find(tx, path), tx)

    def list_codes(self, namespace: Optional[str] = None, tx: Any = None) -> List[CodeRecord]:
        """List allocated codes, optionally restricted to one namespace."""
        source = tx if tx is not None else self.store
        query = source.query(self.by_code_collection)
        if namespace is not None:
            query = query.where("namespace", "==", namespace)

        records = []
        with query.documents() as docs:
            for doc in docs:
                records.append(doc.to(CodeRecord))
        return records

    # ==========================================
    # Mutation
    # ==========================================

    def update_payload(self, namespace: str, owner_key: str, payload: Dict[str, Any],
                       tx: Any = None) -> CodeRecord:
        """
        Replace the payload of an allocated code in both index entries.

        Raises:
            DocumentNotFoundError: If the owner holds no code
        """
        owner_path = self.by_owner_path(namespace, owner_key)

        def save(tx):
            record = tx.get(owner_path, CodeRecord)
            record.payload = dict(payload)
            tx.add_or_replace(owner_path, record)
            tx.add_or_replace(self.by_code_path(record.code), record)
            return record

        return self._run(save, tx)

    def release(self, namespace: str, owner_key: str, tx: Any = None) -> bool:
        """
        Delete the code held by an owner, removing both index entries.

        Returns:
            bool: False if the owner held no code
        """
        owner_path = self.by_owner_path(namespace, owner_key)

        def delete_pair(tx):
            record = self._find(tx, owner_path)
            if record is None:
                return False

            code_path = self.by_code_path(record.code)
            code_record = self._find(tx, code_path)

            tx.delete(owner_path)
            if code_record is not None and code_record.owner_key == owner_key and code_record.namespace == namespace:
                tx.delete(code_path)
            else:
                logger.warning(f"{code_path} does not point back to {namespace}/{owner_key}; left in place")
            return True

        released = self._run(delete_pair, tx)
        if released:
            logger.info(f"Released code held by {namespace}/{owner_key}")
        return released

    def release_code(self, code: str, tx: Any = None) -> bool:
        """
        Delete a code by value, removing both index entries.

        Returns:
            bool: False if the code was not allocated
        """
        code_path = self.by_code_path(code)

        def delete_pair(tx):
            record = self._find(tx, code_path)
            if record is None:
                return False

            owner_path = self.by_owner_path(record.namespace, record.owner_key)
            owner_record = self._find(tx, owner_path)

            tx.delete(code_path)
            if owner_record is not None and owner_record.code == code:
                tx.delete(owner_path)
            else:
                logger.warning(f"{owner_path} does not point back to code {code}; left in place")
            return True

        released = self._run(delete_pair, tx)
        if released:
            logger.info(f"Released code {code}")
        return released

    # ==========================================
    # Consistency
    # ==========================================

    def audit(self) -> List[AuditIssue]:
        """
        Scan both index collections for entries without a matching partner.

        Entries written by this allocator are always paired; issues point at
        records written by other tools or by hand.

        Returns:
            List[AuditIssue]: Empty when the indexes agree
        """
        with timing_context("audit"):
            by_code: Dict[str, CodeRecord] = {}
            for doc in self.store.documents(self.by_code_collection):
                by_code[doc.path] = doc.to(CodeRecord)

            by_owner: Dict[str, CodeRecord] = {}
            for doc in self.store.documents(self.by_owner_collection):
                by_owner[doc.path] = doc.to(CodeRecord)

        issues = []
        for path, record in by_code.items():
            if path != self.by_code_path(record.code):
                issues.append(AuditIssue("misplaced-code", path, f"record holds code {record.code}"))
                continue
            owner_path = self.by_owner_path(record.namespace, record.owner_key)
            partner = by_owner.get(owner_path)
            if partner is None:
                issues.append(AuditIssue("orphaned-code", path, f"missing {owner_path}"))
            elif partner.code != record.code:
                issues.append(AuditIssue("mismatch", path, f"{owner_path} holds code {partner.code}"))

        for path, record in by_owner.items():
            if path != self.by_owner_path(record.namespace, record.owner_key):
                issues.append(AuditIssue("misplaced-owner", path,
                                         f"record belongs to {record.namespace}/{record.owner_key}"))
                continue
            if self.by_code_path(record.code) not in by_code:
                issues.append(AuditIssue("orphaned-owner", path, f"missing {self.by_code_path(record.code)}"))

        if issues:
            logger.warning(f"Code index audit found {len(issues)} issues")
        else:
            logger.info(f"Code index audit clean: {len(by_code)} codes")
        return issues


def create_code_allocator(store: Any, config: Any = None, **kwargs) -> CodeAllocator:
    """
    Create a CodeAllocator using code settings from configuration.

    Args:
        store: DocumentStore holding the code records
        config: FiredocConfig (defaults to the global config)
        **kwargs: Overrides passed to CodeAllocator
    """
    if config is None:
        from .config import get_config
        config = get_config()

    options = {
        "length": config.code_length,
        "max_attempts": config.code_max_attempts,
    }
    options.update(kwargs)
    return CodeAllocator(store, **options)
