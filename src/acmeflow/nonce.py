"""Single-slot replay nonce cache."""

from acmeflow.exceptions import NoNonceAvailable


class NonceCache:
    """Holds at most one unused replay nonce.

    Nonces are single use, so this is a slot rather than a queue: a fresh
    value simply replaces whatever was there. ``take`` empties the slot, so
    the same nonce can never be handed out twice.
    """

    def __init__(self) -> None:
        self._nonce: str | None = None

    def __bool__(self) -> bool:
        return self._nonce is not None

    def take(self) -> str:
        """Return the cached nonce and clear the slot.

        Raises:
            NoNonceAvailable: If the slot is empty.
        """
        nonce, self._nonce = self._nonce, None
        if nonce is None:
            raise NoNonceAvailable("No replay nonce cached")
        return nonce

    def put(self, nonce: str | None) -> None:
        """Store a fresh nonce, overwriting any previous one. Empty values are ignored."""
        if nonce:
            self._nonce = nonce

    def clear(self) -> None:
        self._nonce = None
