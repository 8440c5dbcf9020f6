"""
Shiprocket credential resolution.

Sources, in order:
1. Seller configuration (mapping or object with email/password)
2. Deployment defaults from settings

Some config loaders keep literal quotes around values ("'a@b.com'"), so
values are trimmed and one matching pair of surrounding quotes is stripped.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import MissingCredentialsError

logger = logging.getLogger(__name__)

QUOTE_CHARS = ("'", '"')


@dataclass(frozen=True)
class ShiprocketCredentials:
    """Shiprocket API user credentials."""
    email: str
    password: str

    def __repr__(self) -> str:
        return f"ShiprocketCredentials(email={mask_email(self.email)!r}, password='***')"


def normalize_credential(value: Optional[str]) -> str:
    """Trim whitespace and strip one pair of matching surrounding quotes."""
    if value is None:
        return ""
    value = str(value).strip()
    if len(value) >= 2 and value[0] in QUOTE_CHARS and value[-1] == value[0]:
        value = value[1:-1].strip()
    return value


def mask_email(email: str) -> str:
    """Mask an email for logs (e.g., j***@example.com)."""
    if not email or "@" not in email:
        return "***"

    local, domain = email.rsplit("@", 1)
    if len(local) <= 1:
        masked_local = "*"
    elif len(local) <= 3:
        masked_local = local[0] + "*" * (len(local) - 1)
    else:
        masked_local = local[0] + "***"

    return f"{masked_local}@{domain}"


def _read_pair(source: Any) -> Tuple[str, str]:
    if source is None:
        return "", ""
    if isinstance(source, dict):
        email, password = source.get("email"), source.get("password")
    else:
        email, password = getattr(source, "email", None), getattr(source, "password", None)
    return normalize_credential(email), normalize_credential(password)


def resolve_credentials(
    seller_config: Any = None,
    default_email: Optional[str] = None,
    default_password: Optional[str] = None,
) -> ShiprocketCredentials:
    """
    Resolve Shiprocket credentials.

    Args:
        seller_config: Optional per-seller config carrying email/password
        default_email: Deployment default, settings.SHIPROCKET_EMAIL if None
        default_password: Deployment default, settings.SHIPROCKET_PASSWORD if None

    Raises:
        MissingCredentialsError: if no source yields both values
    """
    email, password = _read_pair(seller_config)
    if email and password:
        logger.debug(f"Using seller Shiprocket credentials for {mask_email(email)}")
        return ShiprocketCredentials(email=email, password=password)

    email = normalize_credential(settings.SHIPROCKET_EMAIL if default_email is None else default_email)
    password = normalize_credential(settings.SHIPROCKET_PASSWORD if default_password is None else default_password)
    if email and password:
        logger.debug(f"Using default Shiprocket credentials for {mask_email(email)}")
        return ShiprocketCredentials(email=email, password=password)

    raise MissingCredentialsError(
        "Shiprocket credentials (SHIPROCKET_EMAIL/SHIPROCKET_PASSWORD) not configured"
    )
