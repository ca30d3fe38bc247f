"""PKCE (RFC 7636) helpers. Only the S256 method is supported."""

import base64
import hashlib
import secrets

SUPPORTED_METHODS = ("S256",)


def compute_s256_challenge(code_verifier: str) -> str:
    """Base64url-encoded (unpadded) SHA-256 of the verifier."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_challenge(code_verifier: str, code_challenge: str, method: str = "S256") -> bool:
    """Check a verifier against the stored challenge in constant time."""
    if method not in SUPPORTED_METHODS or not isinstance(code_verifier, str) or not isinstance(code_challenge, str):
        return False
    if not code_verifier or not code_challenge:
        return False
    expected = compute_s256_challenge(code_verifier)
    return secrets.compare_digest(expected.encode("ascii"), code_challenge.encode("utf-8"))
