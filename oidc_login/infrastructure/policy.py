"""
Registration policy backed by configuration.
"""

from oidc_login.core.domain import RegistrationMode
from oidc_login.core.ports import PolicyStore


class ConfigPolicyStore(PolicyStore):
    """PolicyStore reading fixed values from configuration."""

    def __init__(self, registration_mode: RegistrationMode, override_registration: bool = False):
        self._registration_mode = registration_mode
        self._override_registration = override_registration

    def registration_mode(self) -> RegistrationMode:
        return self._registration_mode

    def override_registration(self) -> bool:
        return self._override_registration

    def effective_registration_mode(self) -> RegistrationMode:
        # The override only lifts administrators-only registration
        mode = self.registration_mode()
        if mode == RegistrationMode.ADMINISTRATORS_ONLY and self.override_registration():
            return RegistrationMode.VISITORS
        return mode
