"""
Extension points for the login flow.

Each hook point holds an ordered list of callbacks, invoked synchronously
in registration order. Callbacks receive a frozen context and may only
change the designated output parameter:

- ``claims_alter``:             fn(claims) mutates the claim catalogue
- ``properties_to_skip_alter``: fn(skip, context) mutates the skip set
- ``userinfo_alter``:           fn(userinfo, context) mutates userinfo
- ``userinfo_claim_alter``:     fn(value, context) returns the new value
- ``pre_authorize``:            fn(context) returns False to veto
- ``userinfo_save``:            fn(account, context) updates the account
- ``post_authorize``:           fn(context)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping

from oidc_login.accounts.models import Account


logger = logging.getLogger(__name__)


class HookPoint(str, Enum):
    CLAIMS_ALTER = "claims_alter"
    PROPERTIES_TO_SKIP_ALTER = "properties_to_skip_alter"
    USERINFO_ALTER = "userinfo_alter"
    USERINFO_CLAIM_ALTER = "userinfo_claim_alter"
    PRE_AUTHORIZE = "pre_authorize"
    USERINFO_SAVE = "userinfo_save"
    POST_AUTHORIZE = "post_authorize"


def frozen(data: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Read-only copy of a mapping for use in contexts."""
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class PluginContext:
    """Context carrying only the provider id."""

    plugin_id: str


@dataclass(frozen=True)
class UserinfoContext:
    """Context for ``userinfo_alter``."""

    plugin_id: str
    tokens: Mapping[str, Any] = field(default_factory=lambda: frozen(None))
    user_data: Mapping[str, Any] = field(default_factory=lambda: frozen(None))


@dataclass(frozen=True)
class ClaimContext:
    """Context for ``userinfo_claim_alter``, one per mapped claim."""

    claim: str
    property_name: str
    property_type: str
    userinfo_mapping: Mapping[str, str]
    tokens: Mapping[str, Any]
    user_data: Mapping[str, Any]
    userinfo: Mapping[str, Any]
    plugin_id: str
    sub: str
    is_new: bool


@dataclass(frozen=True)
class SaveContext:
    """Context for ``userinfo_save``."""

    tokens: Mapping[str, Any]
    user_data: Mapping[str, Any]
    userinfo: Mapping[str, Any]
    plugin_id: str
    sub: str
    is_new: bool


@dataclass(frozen=True)
class AuthorizeContext:
    """Context for ``pre_authorize`` and ``post_authorize``."""

    tokens: Mapping[str, Any]
    account: Account
    userinfo: Mapping[str, Any]
    plugin_id: str
    sub: str
    is_new: bool = False
    destination: str | None = None


class HookRegistry:
    """Ordered callbacks per hook point."""

    def __init__(self):
        self._callbacks: dict[HookPoint, list[Callable[..., Any]]] = {
            point: [] for point in HookPoint
        }

    def register(self, point: HookPoint | str, callback: Callable[..., Any]) -> None:
        """Append a callback to a hook point."""
        self._callbacks[HookPoint(point)].append(callback)
        logger.debug(
            f"Registered {getattr(callback, '__name__', callback)!r} for {HookPoint(point).value}"
        )

    def on(self, point: HookPoint | str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()."""

        def decorator(callback: Callable[..., Any]) -> Callable[..., Any]:
            self.register(point, callback)
            return callback

        return decorator

    def callbacks(self, point: HookPoint | str) -> list[Callable[..., Any]]:
        return list(self._callbacks[HookPoint(point)])

    def alter(self, point: HookPoint | str, data: Any, *context: Any) -> Any:
        """
        Pass a mutable value through every callback for in-place changes.

        Returns:
            The same (possibly mutated) object
        """
        for callback in self._callbacks[HookPoint(point)]:
            callback(data, *context)
        return data

    def transform(self, point: HookPoint | str, value: Any, context: Any) -> Any:
        """Chain a value through callbacks, each returning the next value."""
        for callback in self._callbacks[HookPoint(point)]:
            value = callback(value, context)
        return value

    def invoke(self, point: HookPoint | str, *args: Any) -> list[Any]:
        """Call every callback and collect the results."""
        return [callback(*args) for callback in self._callbacks[HookPoint(point)]]

    def allows(self, point: HookPoint | str, context: Any) -> bool:
        """True unless a callback explicitly returns False."""
        return all(result is not False for result in self.invoke(point, context))

    def clear(self) -> None:
        for callbacks in self._callbacks.values():
            callbacks.clear()


# Singleton instance for dependency injection
_registry: HookRegistry | None = None


def get_hook_registry() -> HookRegistry:
    """Get the hook registry singleton."""
    global _registry
    if _registry is None:
        _registry = HookRegistry()
    return _registry


def reset_hook_registry() -> None:
    """Reset the hook registry singleton (testing)."""
    global _registry
    _registry = None
