"""
cache/secure.py -- Blind-indexed wrapper around a TTL cache.

Both the key and the value are passed through HMAC-SHA256(secret, .) before
they reach the backing store:
  - the literal key never appears in the store (blind index);
  - the literal value is never retrievable, only equality-checkable via
    validate().

An operator with read access to the cache therefore cannot recover active
verification codes or even tell which user an entry belongs to.

Layer rule: no imports from auth/, rbac/, or core/.
"""

from __future__ import annotations

import hashlib
import hmac

from cache.store import Cache

_KEY_PREFIX = "CG_SK_"
_MAX_KEY_LENGTH = 250


class SecureCache:
    """Usage:
    secure = SecureCache(MemoryCache(), secret_key)
    secure.set("delivered:42", "482917", 30)
    secure.validate(secure.get("delivered:42"), "482917")   # True
    """

    def __init__(self, backend: Cache, secret_key: str, key_prefix: str = _KEY_PREFIX) -> None:
        if not secret_key:
            raise ValueError("SecureCache requires a non-empty secret key")
        self._backend = backend
        self._secret = secret_key.encode("utf-8")
        self._prefix = key_prefix

    def _digest(self, value: str) -> str:
        return hmac.new(self._secret, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def secure_key(self, key: str) -> str:
        return f"{self._prefix}{self._digest(key)}"[:_MAX_KEY_LENGTH]

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._backend.set(self.secure_key(key), self._digest(value), ttl_seconds)

    def get(self, key: str) -> str | None:
        """Return the stored digest (not the original value) or None."""
        return self._backend.get(self.secure_key(key))

    def delete(self, key: str) -> None:
        self._backend.delete(self.secure_key(key))

    def validate(self, stored_value: str | None, candidate: str) -> bool:
        """Return True if candidate hashes to stored_value. Constant-time compare."""
        if not stored_value or candidate is None:
            return False
        return hmac.compare_digest(self._digest(candidate), stored_value)
