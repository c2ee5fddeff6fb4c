"""Release signature verification."""

from forgeupdate.signing.verifier import SignatureVerifier, load_public_key

__all__ = [
    "SignatureVerifier",
    "load_public_key",
]
