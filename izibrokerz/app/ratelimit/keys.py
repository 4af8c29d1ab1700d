"""Identity key helpers.

Raw identities (emails, IPs) never reach logs; they are hashed with SHA-256
and truncated to 32 hex chars (128 bits) first.
"""

import hashlib

from fastapi import Request


def hash_identity(identity_key: str) -> str:
    return hashlib.sha256(identity_key.encode()).hexdigest()[:32]


def get_client_ip(request: Request, trust_forwarded_for: bool = True) -> str:
    """Client address, preferring the first X-Forwarded-For hop when trusted."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def client_ip_key(request: Request, trust_forwarded_for: bool = True) -> str:
    """Identity key for anonymous callers: the hashed client IP."""
    return f"ip:{hash_identity(get_client_ip(request, trust_forwarded_for))}"
