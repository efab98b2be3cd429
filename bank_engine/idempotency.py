"""
Idempotency Module

Remembers the outcome of every successful mutating call made with a
caller-supplied idempotency key, so a retried call after a dropped response
returns the original result instead of applying the change twice.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ConflictError
from .storage import StorageInterface


@dataclass
class IdempotencyRecord:
    """Stored outcome of one keyed operation"""
    key: str
    user_id: str
    operation: str
    kind: str
    result: Optional[Dict[str, Any]]
    created_at: datetime


class IdempotencyStore:
    """
    Keyed outcome store

    Keys are scoped to the calling principal. Lookups and records are meant to
    run inside the same storage transaction as the operation they protect, so
    a rolled-back operation leaves no record behind and can be retried with
    the same key.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "idempotency_keys"):
        self.storage = storage
        self.table_name = table_name

    @staticmethod
    def _record_id(user_id: str, key: str) -> str:
        return f"{user_id}:{key}"

    def lookup(self, key: Optional[str], user_id: str, operation: str) -> Optional[IdempotencyRecord]:
        """
        Find the stored outcome for a key

        Args:
            key: Caller-supplied idempotency key (None disables the check)
            user_id: Calling principal
            operation: Operation fingerprint, e.g. "approve:account:<id>"

        Returns:
            The stored record, or None if the key has not been used

        Raises:
            ConflictError: If the key was already used for a different operation
        """
        if not key:
            return None

        data = self.storage.load(self.table_name, self._record_id(user_id, key))
        if data is None:
            return None

        if data['operation'] != operation:
            raise ConflictError(
                f"Idempotency key {key} was already used for {data['operation']}"
            )

        return IdempotencyRecord(
            key=data['key'],
            user_id=data['user_id'],
            operation=data['operation'],
            kind=data['kind'],
            result=data['result'],
            created_at=datetime.fromisoformat(data['created_at'])
        )

    def record(self, key: Optional[str], user_id: str, operation: str, kind: str,
               result: Optional[Dict[str, Any]]) -> None:
        """Store the outcome of a successful operation"""
        if not key:
            return

        now = datetime.now(timezone.utc)
        self.storage.save(self.table_name, self._record_id(user_id, key), {
            'id': self._record_id(user_id, key),
            'key': key,
            'user_id': user_id,
            'operation': operation,
            'kind': kind,
            'result': result,
            'created_at': now.isoformat()
        })
