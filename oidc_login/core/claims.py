"""
Claims normalization and claim-to-account mapping.

Turns the decoded ID token and the userinfo response into a UserInfo
record, and copies configured claims onto account properties.
"""

import logging
from typing import Any, Awaitable, Callable

from oidc_login.accounts.models import Account
from oidc_login.core.domain import Tokens, UserInfo
from oidc_login.core.hooks import (
    ClaimContext,
    HookPoint,
    HookRegistry,
    PluginContext,
    SaveContext,
    UserinfoContext,
    frozen,
)
from oidc_login.core.ports import Messenger, ProviderClient


logger = logging.getLogger(__name__)


STANDARD_CLAIMS: dict[str, dict[str, str]] = {
    "name": {"scope": "profile", "title": "Name", "type": "string"},
    "family_name": {"scope": "profile", "title": "Family name", "type": "string"},
    "given_name": {"scope": "profile", "title": "Given name", "type": "string"},
    "middle_name": {"scope": "profile", "title": "Middle name", "type": "string"},
    "nickname": {"scope": "profile", "title": "Nickname", "type": "string"},
    "preferred_username": {
        "scope": "profile",
        "title": "Preferred username",
        "type": "string",
    },
    "profile": {"scope": "profile", "title": "Profile", "type": "string"},
    "picture": {"scope": "profile", "title": "Picture", "type": "string"},
    "website": {"scope": "profile", "title": "Website", "type": "string"},
    "gender": {"scope": "profile", "title": "Gender", "type": "string"},
    "birthdate": {"scope": "profile", "title": "Birthdate", "type": "string"},
    "zoneinfo": {"scope": "profile", "title": "Zoneinfo", "type": "string"},
    "locale": {"scope": "profile", "title": "Locale", "type": "string"},
    "updated_at": {"scope": "profile", "title": "Updated at", "type": "number"},
    "email": {"scope": "email", "title": "Email", "type": "string"},
    "email_verified": {"scope": "email", "title": "Email verified", "type": "boolean"},
    "address": {"scope": "address", "title": "Address", "type": "json"},
    "phone_number": {"scope": "phone", "title": "Phone number", "type": "string"},
    "phone_number_verified": {
        "scope": "phone",
        "title": "Phone number verified",
        "type": "boolean",
    },
}

# Account fields managed by the login flow itself, never by claim mapping
DEFAULT_PROPERTIES_TO_SKIP = frozenset(
    {"uid", "name", "mail", "status", "roles", "created_at", "updated_at"}
)


class ClaimsMapper:
    """Normalizes provider claims and applies them to accounts."""

    def __init__(self, hooks: HookRegistry, userinfo_mapping: dict[str, str] | None = None):
        self.hooks = hooks
        self.userinfo_mapping = dict(userinfo_mapping or {})

    def claims(self) -> dict[str, dict[str, str]]:
        """Catalogue of known claims, after ``claims_alter``."""
        catalogue = {name: dict(info) for name, info in STANDARD_CLAIMS.items()}
        return self.hooks.alter(HookPoint.CLAIMS_ALTER, catalogue)

    def properties_to_skip(self, plugin_id: str) -> set[str]:
        """Account properties claim mapping must leave alone."""
        skip = set(DEFAULT_PROPERTIES_TO_SKIP)
        return self.hooks.alter(
            HookPoint.PROPERTIES_TO_SKIP_ALTER, skip, PluginContext(plugin_id=plugin_id)
        )

    async def normalize(
        self, client: ProviderClient, tokens: Tokens, messenger: Messenger
    ) -> UserInfo | None:
        """
        Build the UserInfo record for a token bundle.

        Returns None (after queuing a notice) when the provider gave no
        e-mail address or no consistent subject.
        """
        user_data = dict(tokens.id_token_claims)
        userinfo = await client.retrieve_userinfo(tokens) or {}

        context = UserinfoContext(
            plugin_id=client.name,
            tokens=frozen(tokens.model_dump()),
            user_data=frozen(user_data),
        )
        self.hooks.alter(HookPoint.USERINFO_ALTER, userinfo, context)

        if not userinfo.get("email"):
            logger.error(
                f"No e-mail address provided by {client.name}",
                extra={"provider": client.name},
            )
            messenger.add(f"No e-mail address provided by {client.label}.", "error")
            return None

        sub = self.extract_sub(user_data, userinfo)
        if not sub:
            logger.error(
                f"No consistent 'sub' found for {client.name}",
                extra={"provider": client.name},
            )
            messenger.add(
                f"Logging in with {client.label} could not be completed: "
                "no subject identifier was provided.",
                "error",
            )
            return None

        return UserInfo(sub=sub, claims=userinfo, user_data=user_data)

    @staticmethod
    def extract_sub(user_data: dict[str, Any], userinfo: dict[str, Any]) -> str | None:
        """
        Subject from the ID token, or else from userinfo.

        When both carry a subject they must agree.
        """
        token_sub = user_data.get("sub")
        info_sub = userinfo.get("sub")
        if token_sub and info_sub and str(token_sub) != str(info_sub):
            return None
        sub = token_sub or info_sub
        return str(sub) if sub else None

    def apply_to_account(
        self,
        account: Account,
        userinfo: UserInfo,
        *,
        plugin_id: str,
        tokens: Tokens,
        is_new: bool,
    ) -> Account:
        """
        Copy mapped claims onto account properties, then run ``userinfo_save``.

        Skipped properties and claims missing from the catalogue or from
        userinfo are left untouched.
        """
        catalogue = self.claims()
        skip = self.properties_to_skip(plugin_id)
        token_view = frozen(tokens.model_dump())
        user_data_view = frozen(userinfo.user_data)
        userinfo_view = frozen(userinfo.claims)

        for property_name, claim in self.userinfo_mapping.items():
            if property_name in skip:
                logger.debug(f"Skipping protected property {property_name}")
                continue
            if claim not in catalogue:
                logger.warning(
                    f"Ignoring mapping of {property_name} to unknown claim {claim}"
                )
                continue
            if userinfo.get(claim) is None:
                continue

            context = ClaimContext(
                claim=claim,
                property_name=property_name,
                property_type=catalogue[claim].get("type", "string"),
                userinfo_mapping=frozen(self.userinfo_mapping),
                tokens=token_view,
                user_data=user_data_view,
                userinfo=userinfo_view,
                plugin_id=plugin_id,
                sub=userinfo.sub,
                is_new=is_new,
            )
            value = self.hooks.transform(
                HookPoint.USERINFO_CLAIM_ALTER, userinfo.get(claim), context
            )
            account.set_property(property_name, value)

        save_context = SaveContext(
            tokens=token_view,
            user_data=user_data_view,
            userinfo=userinfo_view,
            plugin_id=plugin_id,
            sub=userinfo.sub,
            is_new=is_new,
        )
        self.hooks.invoke(HookPoint.USERINFO_SAVE, account, save_context)
        return account

    async def generate_username(
        self,
        userinfo: UserInfo,
        plugin_id: str,
        exists: Callable[[str], Awaitable[bool]],
    ) -> str:
        """
        Pick a unique login name for a new account.

        Prefers ``preferred_username``, then ``name``, then a name derived
        from the provider and subject. Appends ``_1``, ``_2``, ... on clashes.
        """
        candidate = (
            userinfo.get("preferred_username")
            or userinfo.get("name")
            or f"oidc_{plugin_id}_{userinfo.sub}"
        )
        candidate = str(candidate).strip()

        name = candidate
        suffix = 0
        while await exists(name):
            suffix += 1
            name = f"{candidate}_{suffix}"
        return name
