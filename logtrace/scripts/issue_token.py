"""
Issue a bearer token for local development.

Usage:
    python -m logtrace.scripts.issue_token <subject> [role] [minutes]

Tokens are signed with JWT_SECRET_KEY from environment / .env. Production
tokens come from the identity provider, not from this script.
"""

import sys
from datetime import timedelta

from logtrace.core.security import DEFAULT_ROLE, create_access_token


def issue_token(argv: list[str]) -> str:
    if not argv:
        print("usage: python -m logtrace.scripts.issue_token <subject> [role] [minutes]")
        sys.exit(1)
    subject = argv[0]
    role = argv[1] if len(argv) > 1 else DEFAULT_ROLE
    expires = timedelta(minutes=int(argv[2])) if len(argv) > 2 else None
    return create_access_token(subject, role, expires)


if __name__ == "__main__":
    print(issue_token(sys.argv[1:]))
