"""Integer tokens that let the engine refer back to a session.

The engine stores one opaque "user data" value per memory and hands it to
every callback. Storing the session itself there would keep it alive for
as long as the engine memory, so the binding stores an integer token
instead and resolves it here through a weak reference.
"""

import itertools
import weakref
from typing import Dict, Generic, TypeVar

from sunbridge.exceptions import StaleSessionReference

T = TypeVar("T")


class SessionRegistry(Generic[T]):
    """Arena mapping tokens to weak references.

    Tokens come from a monotonically increasing counter and are never
    reused, so a stale token can never resolve to a newer session.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._slots: Dict[int, weakref.ref] = {}

    def register(self, obj: T) -> int:
        """Add ``obj`` and return its token."""
        token = next(self._counter)
        self._slots[token] = weakref.ref(obj)
        return token

    def resolve(self, token: int) -> T:
        """Return the live object for ``token``.

        Raises
        ------
        StaleSessionReference
            If the token was released or its object has been collected.
        """
        ref = self._slots.get(token)
        obj = None if ref is None else ref()
        if obj is None:
            raise StaleSessionReference(
                f"session token {token} does not refer to a live session"
            )
        return obj

    def release(self, token: int) -> None:
        """Forget ``token``; releasing an unknown token is a no-op."""
        self._slots.pop(token, None)

    def __contains__(self, token: int) -> bool:
        ref = self._slots.get(token)
        return ref is not None and ref() is not None

    def __len__(self) -> int:
        return sum(1 for ref in self._slots.values() if ref() is not None)


#: Registry shared by all sessions of the process.
default_registry: SessionRegistry = SessionRegistry()
