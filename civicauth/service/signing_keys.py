"""Resolution and validation of the token signing secrets.

Runs once while the runtime is built. A production configuration with an
absent or weak secret aborts startup; anywhere else the problem is logged and
a missing secret is replaced by a random one that lives only as long as the
process (tokens signed with it stop verifying after a restart).
"""

from __future__ import annotations

import math
import re
import secrets
from dataclasses import dataclass
from typing import List, Optional

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.errors import SecretMisconfigured

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
MIN_PRODUCTION_SECRET_LENGTH = 64
MIN_ENTROPY_BITS = 128
MAX_REPEATED_CHARS = 3

WEAK_PATTERNS = (
    "secret",
    "password",
    "123456",
    "qwerty",
    "test",
    "dev",
    "development",
    "changeme",
    "default",
    "admin",
    "example",
    "demo",
    "localhost",
)

_REPEAT_RUN = re.compile(r"(.)\1{%d,}" % MAX_REPEATED_CHARS)


@dataclass(frozen=True)
class SigningSecrets:
    access: str
    refresh: str
    generated: bool = False


def estimate_entropy_bits(secret: str) -> float:
    """Character-class entropy estimate: ``len * log2(charset size)``."""
    charset = 0
    if any(c.islower() for c in secret):
        charset += 26
    if any(c.isupper() for c in secret):
        charset += 26
    if any(c.isdigit() for c in secret):
        charset += 10
    if any(not c.isalnum() for c in secret):
        charset += 32
    if not charset:
        return 0.0
    return len(secret) * math.log2(charset)


def _character_classes(secret: str) -> int:
    return sum(
        [
            any(c.islower() for c in secret),
            any(c.isupper() for c in secret),
            any(c.isdigit() for c in secret),
            any(not c.isalnum() for c in secret),
        ]
    )


def validate_secret(secret: str, *, production: bool) -> List[str]:
    """Return the problems that disqualify ``secret``; empty means acceptable."""
    problems: List[str] = []
    min_length = MIN_PRODUCTION_SECRET_LENGTH if production else MIN_SECRET_LENGTH
    if len(secret) < min_length:
        problems.append(f"must be at least {min_length} characters")
    lowered = secret.lower()
    weak = [pattern for pattern in WEAK_PATTERNS if pattern in lowered]
    if weak:
        problems.append(f"contains weak pattern(s): {', '.join(weak)}")
    return problems


def secret_warnings(secret: str) -> List[str]:
    """Advisory strength checks.

    These are logged but never block startup, so a hex secret such as the one
    :func:`generate_secret` produces is accepted in production.
    """
    warnings: List[str] = []
    if estimate_entropy_bits(secret) < MIN_ENTROPY_BITS:
        warnings.append(f"estimated entropy below {MIN_ENTROPY_BITS} bits")
    if _character_classes(secret) < 3:
        warnings.append("mixes fewer than 3 character types")
    if _REPEAT_RUN.search(secret):
        warnings.append(
            f"repeats a character more than {MAX_REPEATED_CHARS} times in a row"
        )
    return warnings


def generate_secret() -> str:
    return secrets.token_hex(64)


def _resolve(name: str, value: Optional[str], *, production: bool) -> tuple[str, bool]:
    if not value:
        if production:
            raise SecretMisconfigured(f"{name} is required in production", ["missing"])
        logger.warning(
            "signing_secret_generated",
            secret_name=name,
            message="using a random secret for this process only; tokens will not survive a restart",
        )
        return generate_secret(), True

    problems = validate_secret(value, production=production)
    if problems:
        if production:
            raise SecretMisconfigured(f"{name} failed validation", problems)
        logger.warning("signing_secret_weak", secret_name=name, problems=problems)
    warnings = secret_warnings(value)
    if warnings:
        logger.warning("signing_secret_advisory", secret_name=name, problems=warnings)
    return value, False


def provision_signing_secrets(settings: Settings) -> SigningSecrets:
    """Resolve the access and refresh signing secrets for this process.

    Raises:
        SecretMisconfigured: in production when a secret is absent, weak, or
            when both kinds share the same secret.
    """
    production = settings.is_production
    access, access_generated = _resolve(
        "JWT_SECRET", settings.jwt_secret, production=production
    )
    refresh, refresh_generated = _resolve(
        "JWT_REFRESH_SECRET", settings.jwt_refresh_secret, production=production
    )
    if secrets.compare_digest(access, refresh):
        if production:
            raise SecretMisconfigured(
                "JWT_SECRET and JWT_REFRESH_SECRET must differ", ["reused"]
            )
        logger.warning("signing_secret_reused", message="generating a separate refresh secret")
        refresh, refresh_generated = generate_secret(), True

    provisioned = SigningSecrets(
        access=access,
        refresh=refresh,
        generated=access_generated or refresh_generated,
    )
    logger.info(
        "signing_secrets_provisioned",
        environment=settings.environment.value,
        generated=provisioned.generated,
    )
    return provisioned
