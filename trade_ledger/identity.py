"""
Identity boundary. The ledger only authorizes against the account id it is
handed; authentication happens elsewhere.
"""

from typing import Optional, Protocol

from .errors import ForbiddenError


class IdentityProvider(Protocol):
    def current_account_id(self) -> Optional[str]:
        ...


class StaticIdentity:
    """Identity fixed at construction, e.g. from a CLI flag or a request."""

    def __init__(self, account_id: Optional[str] = None):
        self.account_id = account_id

    def current_account_id(self) -> Optional[str]:
        return self.account_id


def require_account(identity: IdentityProvider) -> str:
    account_id = identity.current_account_id()
    if not account_id:
        raise ForbiddenError("No account is signed in")
    return account_id
