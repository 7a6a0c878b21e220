"""
ECPay CheckMacValue computation.

The gateway signs every request and callback with a SHA-256 digest over a
canonical, URL-encoded rendering of the parameters wrapped in the merchant's
HashKey/HashIV:

1. Drop the CheckMacValue field (and, for outbound requests, empty values)
2. Sort by key using ordinal comparison
3. Join as key=value pairs with '&'
4. Wrap as HashKey=...&<pairs>&HashIV=...
5. Form-encode, lowercase, then restore the characters .NET leaves literal
6. SHA-256, uppercase hex
"""
import hashlib
import hmac
from typing import Mapping
from urllib.parse import quote_plus

import structlog

logger = structlog.get_logger(__name__)

CHECK_MAC_FIELD = "CheckMacValue"

# Applied after lowercasing the encoded string.
_RESTORED_CHARACTERS = (
    ("%21", "!"),
    ("%2a", "*"),
    ("%28", "("),
    ("%29", ")"),
    ("%2d", "-"),
    ("%5f", "_"),
    ("%2e", "."),
)


class CheckMacValue:
    """
    Signs outbound requests and verifies inbound callbacks.

    Outbound requests drop empty parameters before signing; inbound callbacks
    are verified over every field ECPay posted, empty ones included.
    """

    def __init__(self, hash_key: str, hash_iv: str):
        """
        Initialize with the merchant's secrets.

        Args:
            hash_key: ECPay HashKey
            hash_iv: ECPay HashIV
        """
        if not hash_key or not hash_iv:
            raise ValueError("HashKey and HashIV are required")
        self._hash_key = hash_key
        self._hash_iv = hash_iv

    def canonicalize(self, params: Mapping[str, str], drop_empty: bool) -> str:
        """
        Build the encoded string that gets hashed.

        Args:
            params: Flat string parameter map
            drop_empty: Drop parameters with empty values (outbound rule)

        Returns:
            str: Lowercased, URL-encoded canonical string
        """
        fields = {
            key: "" if value is None else str(value)
            for key, value in params.items()
            if key != CHECK_MAC_FIELD
        }
        if drop_empty:
            fields = {key: value for key, value in fields.items() if value != ""}

        # Python's default str ordering is by code point, i.e. ordinal.
        joined = "&".join(f"{key}={fields[key]}" for key in sorted(fields))
        raw = f"HashKey={self._hash_key}&{joined}&HashIV={self._hash_iv}"

        encoded = quote_plus(raw, safe="").lower()
        for escaped, literal in _RESTORED_CHARACTERS:
            encoded = encoded.replace(escaped, literal)
        return encoded

    def _digest(self, params: Mapping[str, str], drop_empty: bool) -> str:
        canonical = self.canonicalize(params, drop_empty=drop_empty)
        return hashlib.sha256(canonical.encode("ascii")).hexdigest().upper()

    def sign(self, params: Mapping[str, str]) -> str:
        """
        Compute the CheckMacValue for an outbound request.

        Returns:
            str: 64-character uppercase hex digest
        """
        return self._digest(params, drop_empty=True)

    def verify(self, params: Mapping[str, str]) -> bool:
        """
        Check the CheckMacValue supplied in an inbound callback.

        Returns:
            bool: True only when the supplied value exactly matches
        """
        supplied = params.get(CHECK_MAC_FIELD)
        if not supplied:
            logger.warning("check_mac_value_missing")
            return False

        expected = self._digest(params, drop_empty=False)
        return hmac.compare_digest(expected.encode("ascii"), str(supplied).encode("utf-8"))
