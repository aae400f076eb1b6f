"""
Authorization coordinator.

Decides what a verified token bundle means for local accounts: log in an
already bound account, register a new one, or connect the subject to the
account that is currently logged in.
"""

import logging

from oidc_login.accounts.models import Account, AccountStatus
from oidc_login.accounts.repository import AccountRepository
from oidc_login.core.claims import ClaimsMapper
from oidc_login.core.domain import (
    AuthorizationVerdict,
    Destination,
    RegistrationMode,
    Tokens,
    UserInfo,
    VerdictReason,
)
from oidc_login.core.exceptions import (
    AuthorizationDeniedError,
    SubjectAlreadyBoundError,
)
from oidc_login.core.hooks import AuthorizeContext, HookPoint, HookRegistry, frozen
from oidc_login.core.ports import Messenger, PolicyStore, ProviderClient
from oidc_login.sessions.store import Session


logger = logging.getLogger(__name__)

# Session key holding the logged-in account's uid
CURRENT_USER_KEY = "uid"


def current_user_id(session: Session) -> str | None:
    """Uid of the account logged in on this session, if any."""
    uid = session.get(CURRENT_USER_KEY)
    return str(uid) if uid is not None else None


class AuthorizationCoordinator:
    """Maps authorized token bundles onto local accounts."""

    def __init__(
        self,
        repository: AccountRepository,
        claims_mapper: ClaimsMapper,
        policy: PolicyStore,
        hooks: HookRegistry,
        connect_existing_users: bool = False,
        always_save_userinfo: bool = False,
    ):
        self.repository = repository
        self.claims_mapper = claims_mapper
        self.policy = policy
        self.hooks = hooks
        self.connect_existing_users = connect_existing_users
        self.always_save_userinfo = always_save_userinfo

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def resolve(
        self,
        client: ProviderClient,
        tokens: Tokens,
        session: Session,
        messenger: Messenger,
        destination: Destination | None = None,
    ) -> AuthorizationVerdict:
        """
        Log in the account bound to the token's subject, registering one
        if policy allows.

        Args:
            client: Provider the tokens came from
            tokens: Exchanged token bundle
            session: Session to establish the login on
            messenger: Sink for user-facing notices
            destination: Where the browser goes next (passed to hooks)

        Returns:
            Verdict carrying the logged-in account on success
        """
        userinfo = await self._normalize(client, tokens, messenger)
        if userinfo is None:
            return AuthorizationVerdict.fail(VerdictReason.CLAIMS_REJECTED)

        target = destination.render() if destination else None
        bind_subject = False

        account = await self.repository.find_by_subject(client.name, userinfo.sub)
        if account is None:
            verdict = await self._match_existing_mail(client, userinfo, messenger)
            if verdict is None:
                verdict = await self._register(client, tokens, userinfo, messenger, target)
                if verdict.success:
                    self._login(session, verdict.account, client, is_new=True)
                return verdict
            if not verdict.success:
                return verdict
            account = verdict.account
            bind_subject = True
        elif account.is_blocked:
            messenger.add(
                f"The username {account.name} has not been activated or is blocked.",
                "error",
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_BLOCKED)

        context = self._authorize_context(client, tokens, account, userinfo, False, target)
        try:
            allowed = self.hooks.allows(HookPoint.PRE_AUTHORIZE, context)
        except Exception as e:
            logger.error(
                f"Pre-authorize hook failed for {client.name}: {e}",
                exc_info=True,
                extra={"provider": client.name, "account_uid": account.uid},
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_ERROR)
        if not allowed:
            logger.info(
                "Login vetoed by pre-authorize hook",
                extra={"provider": client.name, "account_uid": account.uid},
            )
            return AuthorizationVerdict.fail(VerdictReason.AUTHORIZATION_DENIED)

        # Nothing is written to the session until every hook has succeeded
        try:
            async with self.repository.transaction():
                if bind_subject:
                    await self.repository.bind_subject(account.uid, client.name, userinfo.sub)
                    logger.info(
                        f"Connected {client.name} subject to existing account by e-mail",
                        extra={"provider": client.name, "account_uid": account.uid},
                    )
                if self.always_save_userinfo:
                    self.claims_mapper.apply_to_account(
                        account, userinfo, plugin_id=client.name, tokens=tokens, is_new=False
                    )
                    await self.repository.save(account)
                self.hooks.invoke(HookPoint.POST_AUTHORIZE, context)
        except Exception as e:
            logger.error(
                f"Failed to authorize account via {client.name}: {e}",
                exc_info=True,
                extra={"provider": client.name, "account_uid": account.uid},
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_ERROR)

        self._login(session, account, client, is_new=False)
        return AuthorizationVerdict.ok(account)

    async def _normalize(
        self, client: ProviderClient, tokens: Tokens, messenger: Messenger
    ) -> UserInfo | None:
        """ClaimsMapper.normalize, with a failing ``userinfo_alter`` hook treated as rejection."""
        try:
            return await self.claims_mapper.normalize(client, tokens, messenger)
        except Exception as e:
            logger.error(
                f"Failed to normalize claims from {client.name}: {e}",
                exc_info=True,
                extra={"provider": client.name},
            )
            return None

    async def _match_existing_mail(
        self, client: ProviderClient, userinfo: UserInfo, messenger: Messenger
    ) -> AuthorizationVerdict | None:
        """
        Find the account an unbound subject should be connected to by e-mail.

        Returns None when no account uses the e-mail address. Binding is
        left to the caller.
        """
        existing = await self.repository.find_by_mail(userinfo.email)
        if existing is None:
            return None

        if not self.connect_existing_users:
            messenger.add(f"The e-mail address is already taken: {userinfo.email}", "error")
            return AuthorizationVerdict.fail(VerdictReason.SUBJECT_CONFLICT)

        if existing.is_blocked:
            messenger.add(
                f"The username {existing.name} has not been activated or is blocked.",
                "error",
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_BLOCKED)

        return AuthorizationVerdict.ok(existing)

    async def _register(
        self,
        client: ProviderClient,
        tokens: Tokens,
        userinfo: UserInfo,
        messenger: Messenger,
        target: str | None,
    ) -> AuthorizationVerdict:
        """Create and bind a new account, all or nothing."""
        mode = self.policy.effective_registration_mode()
        if mode == RegistrationMode.ADMINISTRATORS_ONLY:
            messenger.add("Only administrators can register new accounts.", "error")
            return AuthorizationVerdict.fail(VerdictReason.REGISTRATION_BLOCKED)

        status = (
            AccountStatus.BLOCKED
            if mode == RegistrationMode.VISITORS_ADMINISTRATIVE_APPROVAL
            else AccountStatus.ACTIVE
        )

        try:
            async with self.repository.transaction():
                name = await self.claims_mapper.generate_username(
                    userinfo, client.name, self.repository.name_exists
                )
                account = Account(name=name, mail=userinfo.email, status=status)

                context = self._authorize_context(client, tokens, account, userinfo, True, target)
                if not self.hooks.allows(HookPoint.PRE_AUTHORIZE, context):
                    raise AuthorizationDeniedError("Registration vetoed by pre-authorize hook")

                self.claims_mapper.apply_to_account(
                    account, userinfo, plugin_id=client.name, tokens=tokens, is_new=True
                )
                await self.repository.create(account)
                await self.repository.bind_subject(account.uid, client.name, userinfo.sub)

                if status == AccountStatus.ACTIVE:
                    self.hooks.invoke(HookPoint.POST_AUTHORIZE, context)
        except AuthorizationDeniedError as e:
            logger.info(str(e), extra={"provider": client.name})
            return AuthorizationVerdict.fail(VerdictReason.AUTHORIZATION_DENIED)
        except Exception as e:
            logger.error(
                f"Failed to register account via {client.name}: {e}",
                exc_info=True,
                extra={"provider": client.name},
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_ERROR)

        if status == AccountStatus.BLOCKED:
            messenger.add(
                "Thank you for applying for an account. Your account is currently "
                "pending approval by the site administrator.",
                "status",
            )
            logger.info(
                "Registered account pending approval",
                extra={"provider": client.name, "account_uid": account.uid},
            )
            return AuthorizationVerdict.fail(VerdictReason.REGISTRATION_BLOCKED)

        return AuthorizationVerdict.ok(account)

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect_current_user(
        self,
        client: ProviderClient,
        tokens: Tokens,
        session: Session,
        messenger: Messenger,
    ) -> AuthorizationVerdict:
        """
        Bind the token's subject to the account logged in on the session.

        Fails without rebinding when the subject belongs to another account.
        """
        uid = current_user_id(session)
        account = await self.repository.get_by_uid(uid) if uid else None
        if account is None:
            logger.warning(
                "Connect requested without a logged-in account",
                extra={"provider": client.name},
            )
            return AuthorizationVerdict.fail(VerdictReason.UID_MISMATCH)

        userinfo = await self._normalize(client, tokens, messenger)
        if userinfo is None:
            return AuthorizationVerdict.fail(VerdictReason.CLAIMS_REJECTED)

        bound = await self.repository.find_by_subject(client.name, userinfo.sub)
        if bound is not None and bound.uid != account.uid:
            messenger.add(
                f"Another user is already connected to this {client.label} account.",
                "error",
            )
            return AuthorizationVerdict.fail(VerdictReason.SUBJECT_CONFLICT)

        context = self._authorize_context(client, tokens, account, userinfo, False, None)
        try:
            async with self.repository.transaction():
                if bound is None:
                    await self.repository.bind_subject(account.uid, client.name, userinfo.sub)
                if self.always_save_userinfo:
                    self.claims_mapper.apply_to_account(
                        account, userinfo, plugin_id=client.name, tokens=tokens, is_new=False
                    )
                    await self.repository.save(account)
                self.hooks.invoke(HookPoint.POST_AUTHORIZE, context)
        except SubjectAlreadyBoundError:
            messenger.add(
                f"Another user is already connected to this {client.label} account.",
                "error",
            )
            return AuthorizationVerdict.fail(VerdictReason.SUBJECT_CONFLICT)
        except Exception as e:
            logger.error(
                f"Failed to connect account via {client.name}: {e}",
                exc_info=True,
                extra={"provider": client.name, "account_uid": account.uid},
            )
            return AuthorizationVerdict.fail(VerdictReason.ACCOUNT_ERROR)

        logger.info(
            f"Connected {client.name} to account",
            extra={"provider": client.name, "account_uid": account.uid},
        )
        return AuthorizationVerdict.ok(account)

    # ------------------------------------------------------------------

    @staticmethod
    def _login(
        session: Session, account: Account, client: ProviderClient, is_new: bool
    ) -> None:
        session.set(CURRENT_USER_KEY, account.uid)
        session.request_regeneration()
        logger.info(
            "Logged in new account" if is_new else "Logged in account",
            extra={"provider": client.name, "account_uid": account.uid},
        )

    @staticmethod
    def _authorize_context(
        client: ProviderClient,
        tokens: Tokens,
        account: Account,
        userinfo: UserInfo,
        is_new: bool,
        destination: str | None,
    ) -> AuthorizeContext:
        return AuthorizeContext(
            tokens=frozen(tokens.model_dump()),
            account=account.model_copy(deep=True),
            userinfo=frozen(userinfo.claims),
            plugin_id=client.name,
            sub=userinfo.sub,
            is_new=is_new,
            destination=destination,
        )
