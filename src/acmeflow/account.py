"""Account registration and lifecycle (RFC 8555 Section 7.3)."""

from pydantic import BaseModel, ValidationError

from acmeflow._logging import get_logger
from acmeflow.crypto import AccountKey, PrivateKey, as_account_key
from acmeflow.exceptions import ProblemError, ProtocolError, RegistrationRejected
from acmeflow.models import Account, AccountStatus
from acmeflow.session import AcmeSession, json_body
from acmeflow.signer import Signer

logger = get_logger(__name__)


class ExternalAccountBinding(BaseModel):
    """Credentials a CA hands out for binding a new account to an external one."""

    kid: str
    hmac_key: str


class AccountManager:
    """Registers, looks up and manages the ACME account for one key.

    The manager is the only owner of the account key: it lives in the
    session's :class:`Signer`. Once registered, the account URL becomes the
    ``kid`` of every signed request made through the session.

    Args:
        session: The signed request session bound to the account key.
    """

    def __init__(self, session: AcmeSession):
        self.session = session
        self._account: Account | None = None

    @property
    def account(self) -> Account | None:
        return self._account

    @property
    def account_url(self) -> str | None:
        return self.session.kid

    def _require_account(self) -> str:
        if not self.session.kid:
            raise ValueError("Account not registered. Call register_account() first.")
        return self.session.kid

    def _store(self, response_body: dict, url: str) -> Account:
        try:
            account = Account.model_validate(response_body)
        except ValidationError as err:
            raise ProtocolError(f"Malformed account resource: {err}") from err
        account = account.model_copy(update={"url": url})
        self._account = account
        self.session.kid = url
        return account

    async def register(
        self,
        contacts: list[str] | None = None,
        terms_agreed: bool = False,
        external_account_binding: ExternalAccountBinding | None = None,
        only_return_existing: bool = False,
    ) -> Account:
        """Register a new account or find the existing one for this key.

        ``201 Created`` means a new account, ``200 OK`` means the key already
        had one. Either way the ``Location`` header becomes the account URL.

        Args:
            contacts: Contact URIs, e.g. ``["mailto:admin@example.org"]``.
            terms_agreed: Whether the terms of service are agreed to.
            external_account_binding: EAB credentials, for CAs that require them.
            only_return_existing: Look up without creating.

        Returns:
            The Account resource.

        Raises:
            ValueError: If the CA requires external account binding and none is given.
            RegistrationRejected: If the CA refuses the request.
            ProblemError: If the CA fails with a server error (5xx).
            ProtocolError: If the response has no Location header.
        """
        url = self.session.directory.endpoint("newAccount")
        directory = self.session.directory.directory

        payload: dict = {}
        if only_return_existing:
            payload["onlyReturnExisting"] = True
        else:
            payload["termsOfServiceAgreed"] = terms_agreed
            if contacts:
                payload["contact"] = list(contacts)
            if external_account_binding is not None:
                payload["externalAccountBinding"] = self.session.signer.external_account_binding(
                    external_account_binding.kid,
                    external_account_binding.hmac_key,
                    url,
                )
            elif directory.meta.external_account_required:
                raise ValueError("This CA requires external account binding credentials")

        try:
            response = await self.session.post(url, payload, use_kid=False)
        except ProblemError as err:
            if err.status_code is not None and err.status_code >= 500:
                raise
            logger.error(
                "Account registration rejected",
                extra={"type": err.type, "status_code": err.status_code},
            )
            raise RegistrationRejected.wrap(err) from err

        account_url = response.location
        if not account_url:
            raise ProtocolError("newAccount response has no Location header")

        account = self._store(json_body(response), account_url)
        created = response.status_code == 201
        logger.info(
            "Account registered" if created else "Existing account found",
            extra={"account_url": account_url, "status": account.status},
        )
        return account

    async def lookup(self) -> Account:
        """Find the existing account for this key without creating one."""
        return await self.register(only_return_existing=True)

    async def refresh(self) -> Account:
        """Re-read the account resource from the CA."""
        url = self._require_account()
        response = await self.session.post_as_get(url)
        return self._store(json_body(response), url)

    async def update_contacts(self, contacts: list[str]) -> Account:
        """Replace the account's contact URIs."""
        url = self._require_account()
        response = await self.session.post(url, {"contact": list(contacts)})
        return self._store(json_body(response), url)

    async def deactivate(self) -> Account:
        """Deactivate the current account (RFC 8555 Section 7.3.6).

        WARNING: This is irreversible. A deactivated account cannot be
        reactivated, and no new orders can be created.
        """
        url = self._require_account()
        response = await self.session.post(url, {"status": AccountStatus.DEACTIVATED.value})
        account = self._store(json_body(response), url)
        logger.info("Account deactivated", extra={"account_url": url})
        return account

    async def rollover_key(self, new_key: AccountKey | PrivateKey) -> None:
        """Roll over to a new account key (RFC 8555 Section 7.3.5).

        After rollover every subsequent request is signed with the new key.
        """
        account_url = self._require_account()
        key_change_url = self.session.directory.endpoint("keyChange")
        new_account_key = as_account_key(new_key)

        inner = self.session.signer.sign_key_change(new_account_key, account_url, key_change_url)
        await self.session.post(key_change_url, inner)

        self.session.signer = Signer(new_account_key)
        logger.info("Account key rolled over", extra={"account_url": account_url})
