"""Unit tests for the replay nonce cache."""

import pytest

from acmeflow.exceptions import NoNonceAvailable
from acmeflow.nonce import NonceCache


def test_take_empties_the_slot():
    cache = NonceCache()
    cache.put("n1")

    assert cache
    assert cache.take() == "n1"
    assert not cache
    with pytest.raises(NoNonceAvailable):
        cache.take()


def test_put_replaces_previous_nonce():
    cache = NonceCache()
    cache.put("n1")
    cache.put("n2")

    assert cache.take() == "n2"


@pytest.mark.parametrize("value", [None, ""])
def test_put_ignores_missing_nonce(value):
    cache = NonceCache()
    cache.put("n1")
    cache.put(value)

    assert cache.take() == "n1"


def test_clear():
    cache = NonceCache()
    cache.put("n1")
    cache.clear()

    assert not cache
