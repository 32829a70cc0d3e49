"""JWS request signing bound to an account key."""

from acmeflow._logging import get_logger
from acmeflow.crypto import (
    AccountKey,
    PrivateKey,
    as_account_key,
    base64url_decode,
    sign_hs256,
    sign_jws,
)
from acmeflow.exceptions import SigningError

logger = get_logger(__name__)


class Signer:
    """Produces signed request envelopes for one account key.

    Signing is a pure function of the inputs and the key; the signer holds no
    nonce or account state of its own.

    Args:
        key: The account key, either an :class:`AccountKey` or a raw
            ``cryptography`` private key.
    """

    def __init__(self, key: AccountKey | PrivateKey):
        self.key = as_account_key(key)

    @property
    def algorithm(self) -> str:
        return self.key.algorithm

    def jwk(self) -> dict:
        return self.key.jwk()

    def thumbprint(self) -> str:
        return self.key.thumbprint()

    def sign(
        self,
        url: str,
        payload: dict | str,
        nonce: str,
        kid: str | None = None,
    ) -> dict[str, str]:
        """Sign a request for ``url``.

        Args:
            url: Target URL, bound into the protected header.
            payload: JSON payload, or "" for POST-as-GET.
            nonce: Replay nonce for this request.
            kid: Account URL. When None the public key is embedded as ``jwk``.

        Returns:
            Flattened JWS dictionary.

        Raises:
            SigningError: If the key backend fails to sign.
        """
        try:
            return sign_jws(self.key, payload, url, nonce=nonce, kid=kid)
        except Exception as err:
            logger.error("Signing failed", extra={"url": url, "alg": self.algorithm})
            raise SigningError(f"Could not sign request for {url}: {err}") from err

    def sign_key_change(
        self,
        new_key: AccountKey | PrivateKey,
        account_url: str,
        url: str,
    ) -> dict[str, str]:
        """Build the inner JWS of a key rollover (RFC 8555 Section 7.3.5).

        The inner object is signed by the new key, carries no nonce, and
        names the old key in its payload.
        """
        new_account_key = as_account_key(new_key)
        payload = {"account": account_url, "oldKey": self.key.jwk()}
        try:
            return sign_jws(new_account_key, payload, url, nonce=None, kid=None)
        except Exception as err:
            raise SigningError(f"Could not sign key change: {err}") from err

    def external_account_binding(
        self,
        eab_kid: str,
        hmac_key: str | bytes,
        url: str,
    ) -> dict[str, str]:
        """Build the externalAccountBinding object (RFC 8555 Section 7.3.4).

        Args:
            eab_kid: Key identifier issued by the CA out of band.
            hmac_key: MAC key, raw bytes or base64url text as CAs hand it out.
            url: The newAccount URL.
        """
        mac_key = base64url_decode(hmac_key) if isinstance(hmac_key, str) else hmac_key
        protected = {"alg": "HS256", "kid": eab_kid, "url": url}
        return sign_hs256(mac_key, protected, self.key.jwk())
