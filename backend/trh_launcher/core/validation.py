"""
Centralized validation utilities

Validates the administrator credentials handed to the stack before any
subprocess is spawned.
"""

import logging
import re
from dataclasses import dataclass

from trh_launcher.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass
class ContainerCredentials:
    """Optional administrator account for the platform"""

    admin_email: str | None = None
    admin_password: str | None = None

    def to_env(self) -> dict[str, str]:
        """Environment variables consumed by the compose definition"""
        env = {}
        if self.admin_email:
            env["ADMIN_EMAIL"] = self.admin_email
        if self.admin_password:
            env["ADMIN_PASSWORD"] = self.admin_password
        return env


class CredentialValidator:
    """
    Credential validation for the container-start environment

    Empty values are allowed (the stack falls back to its own defaults);
    provided values must be well-formed.
    """

    @staticmethod
    def validate_email(email: str) -> str:
        """
        Validate an administrator email address

        Returns:
            The trimmed email

        Raises:
            ConfigurationError: If the address is too long or malformed
        """
        email = str(email).strip()
        if len(email) > MAX_EMAIL_LENGTH:
            raise ConfigurationError(
                "Email address too long",
                recovery_hint=f"Use an address of at most {MAX_EMAIL_LENGTH} characters",
            )
        if not EMAIL_PATTERN.match(email):
            raise ConfigurationError(
                "Invalid email format", recovery_hint="Use an address like admin@example.com"
            )
        return email

    @staticmethod
    def validate_password(password: str) -> str:
        """
        Validate an administrator password

        Raises:
            ConfigurationError: If the password length is out of range
        """
        password = str(password)
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ConfigurationError(
                "Password too long",
                recovery_hint=f"Use at most {MAX_PASSWORD_LENGTH} characters",
            )
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ConfigurationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        return password

    @classmethod
    def validate(cls, credentials: ContainerCredentials | None) -> ContainerCredentials:
        """
        Validate optional credentials

        Returns:
            A new ContainerCredentials with normalized values
        """
        result = ContainerCredentials()
        if credentials is None:
            return result

        if credentials.admin_email:
            result.admin_email = cls.validate_email(credentials.admin_email)
        if credentials.admin_password:
            result.admin_password = cls.validate_password(credentials.admin_password)

        logger.debug(
            f"Credentials validated (email set: {bool(result.admin_email)}, "
            f"password set: {bool(result.admin_password)})"
        )
        return result
