import hashlib
import hmac
from typing import Any, List, Mapping, Tuple
from urllib.parse import urlencode

from ..errors import ConfigurationError


def canonical_pairs(params: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """
    Drop None / "" values, stringify the rest and sort by key.
    0 and False are real values and are kept.
    """
    pairs = [(str(k), str(v)) for k, v in params.items() if v is not None and v != ""]
    pairs.sort(key=lambda kv: kv[0].encode("utf-8"))
    return pairs


def canonical_query(params: Mapping[str, Any]) -> str:
    """Sorted, form-encoded query string that is signed and verified byte for byte."""
    return urlencode(canonical_pairs(params))


def _digest(algorithm: str):
    try:
        hashlib.new(algorithm)
    except (ValueError, TypeError):
        raise ConfigurationError(f"Unsupported hash algorithm: {algorithm}")
    return algorithm


def sign(secret: str, canonical: str, algorithm: str = "sha512") -> str:
    if not secret:
        raise ConfigurationError("Missing signing secret")
    digest = _digest(algorithm)
    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), digest).hexdigest()


def verify(secret: str, canonical: str, provided: str, algorithm: str = "sha512") -> bool:
    """Constant-time check of a provider signature; upper or lower case hex is accepted."""
    expected = sign(secret, canonical, algorithm)
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("utf-8"))
