# graintrust/fingerprint.py

import hashlib
import re

CID_PREFIX = "Qm"
DIGEST_LENGTH = 44
FINGERPRINT_LENGTH = len(CID_PREFIX) + DIGEST_LENGTH

_FINGERPRINT_RE = re.compile(rf"^{CID_PREFIX}[0-9a-f]{{{DIGEST_LENGTH}}}$")


def fingerprint(locator: str) -> str:
    """
    Derives the evidence fingerprint for an image locator.

    SHA-256 over the UTF-8 locator, truncated to 44 hex chars and prefixed
    with "Qm" so it reads like an IPFS CIDv0. Any verifier holding the same
    locator recomputes the same value; an empty locator still hashes.
    """
    digest = hashlib.sha256(locator.encode("utf-8")).hexdigest()
    return f"{CID_PREFIX}{digest[:DIGEST_LENGTH]}"


def is_fingerprint(value: str) -> bool:
    return bool(value) and _FINGERPRINT_RE.match(value) is not None


def get_public_url(locator: str, gateway_url: str = "https://ipfs.io/ipfs/") -> str:
    """
    Resolves a bare CID or ipfs:// locator to a gateway URL.
    HTTP(S) locators are already public and are returned untouched.
    """
    if not locator:
        return ""

    if locator.startswith("ipfs://"):
        cid = locator[len("ipfs://"):]
    elif locator.startswith(("http://", "https://")):
        return locator
    else:
        cid = locator

    # Ensure the base URL ends with a slash before appending the CID
    gateway = gateway_url.rstrip("/") + "/"
    return f"{gateway}{cid}"
