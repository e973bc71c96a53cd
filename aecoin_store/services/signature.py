"""Billplz X-Signature verification.

Billplz signs both the server-to-server callback (form POST) and the browser
redirect (query string). The source string is built from every field except
``x_signature``: each field becomes ``key + value``, the entries are sorted
case-insensitively and joined with ``|``. The signature is the hex
HMAC-SHA256 of that string keyed with the account's X-Signature key.

Redirect fields arrive as ``billplz[id]``, ``billplz[paid]`` and so on; their
source entries keep the ``billplz`` prefix (``billplzidabc123``).
"""

import enum
import hashlib
import hmac
import os
import re
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from ..utils.constants import BILLPLZ_REDIRECT_PREFIX, SIGNATURE_FIELD
from ..utils.errors import ConfigurationError, SignatureError
from ..utils.logger import logger

_REDIRECT_PARAM = re.compile(r"^billplz\[(?P<key>[^\]]+)\]$")
_TRUTHY = {"1", "true", "yes", "on"}


class SignatureCheck(enum.Enum):
    VERIFIED = "verified"
    BYPASSED = "bypassed"
    INVALID = "invalid"

    @property
    def accepted(self) -> bool:
        return self is not SignatureCheck.INVALID


def build_source_string(fields: Mapping[str, Any], prefix: str = "") -> str:
    pairs = []
    for key, value in fields.items():
        if key == SIGNATURE_FIELD:
            continue
        pairs.append(f"{prefix}{key}{'' if value is None else value}")
    pairs.sort(key=str.lower)
    return "|".join(pairs)


def compute_signature(fields: Mapping[str, Any], key: str, prefix: str = "") -> str:
    source = build_source_string(fields, prefix=prefix)
    return hmac.new(key.encode("utf-8"), source.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_redirect_query(query: Mapping[str, Any]) -> dict[str, str]:
    """Pull ``billplz[...]`` parameters out of a redirect query string."""
    fields: dict[str, str] = {}
    for name, value in query.items():
        match = _REDIRECT_PARAM.match(name)
        if match:
            fields[match.group("key")] = "" if value is None else str(value)
    return fields


class SignatureVerifier:
    def __init__(
        self,
        signature_key: Optional[str] = None,
        allow_bypass: Optional[bool] = None,
        environment: Optional[str] = None,
    ):
        load_dotenv()

        if signature_key is None:
            signature_key = os.getenv("BILLPLZ_SIGNATURE_KEY") or ""
        if allow_bypass is None:
            allow_bypass = (os.getenv("BILLPLZ_SIGNATURE_BYPASS") or "").strip().lower() in _TRUTHY
        if environment is None:
            environment = os.getenv("APP_ENV") or "development"

        self.signature_key = signature_key.strip()
        self.environment = environment.strip().lower()
        self.allow_bypass = allow_bypass

        if self.allow_bypass and self.is_production:
            raise ConfigurationError("BILLPLZ_SIGNATURE_BYPASS cannot be enabled when APP_ENV=production")

    @property
    def is_production(self) -> bool:
        return self.environment in {"prod", "production"}

    def verify_callback(self, fields: Mapping[str, Any]) -> SignatureCheck:
        return self._verify(fields, prefix="", source="callback")

    def verify_redirect(self, fields: Mapping[str, Any]) -> SignatureCheck:
        return self._verify(fields, prefix=BILLPLZ_REDIRECT_PREFIX, source="redirect")

    def require_callback(self, fields: Mapping[str, Any]) -> SignatureCheck:
        return self._require(self.verify_callback(fields))

    def require_redirect(self, fields: Mapping[str, Any]) -> SignatureCheck:
        return self._require(self.verify_redirect(fields))

    def _require(self, check: SignatureCheck) -> SignatureCheck:
        if not check.accepted:
            raise SignatureError("invalid signature")
        return check

    def _verify(self, fields: Mapping[str, Any], prefix: str, source: str) -> SignatureCheck:
        if not self.signature_key:
            if self.allow_bypass:
                logger.warning(
                    f"BILLPLZ_SIGNATURE_KEY not configured - skipping {source} signature verification (DEVELOPMENT ONLY)"
                )
                return SignatureCheck.BYPASSED
            raise ConfigurationError("BILLPLZ_SIGNATURE_KEY not configured")

        received = str(fields.get(SIGNATURE_FIELD) or "")
        if not received:
            logger.error(f"No x_signature found in Billplz {source} params")
            return SignatureCheck.INVALID

        expected = compute_signature(fields, self.signature_key, prefix=prefix)
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            logger.warning(f"Billplz {source} signature mismatch for bill {fields.get('id') or 'unknown'}")
            return SignatureCheck.INVALID
        return SignatureCheck.VERIFIED
