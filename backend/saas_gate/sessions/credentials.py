"""
Credential verification seam.

Accounts and their password hashes live in the account subsystem. It plugs
in here so the login and credential-change routes can issue and revoke
sessions without this service ever storing a password.
"""

from abc import ABC, abstractmethod
from typing import Optional


class CredentialVerifier(ABC):
    """Checks and changes account credentials on behalf of the session routes."""

    @abstractmethod
    def verify(self, email: str, password: str) -> Optional[str]:
        """
        Check a login attempt.

        Returns:
            The account id when the credentials match, otherwise None.
            Unknown emails and wrong passwords are indistinguishable.
        """

    @abstractmethod
    def change_password(self, account_id: str, current_password: str, new_password: str) -> bool:
        """
        Replace the account's password.

        Returns:
            False when current_password does not match; nothing is changed.
        """
