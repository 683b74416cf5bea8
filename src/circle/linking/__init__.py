"""Identity linking between Stripe customers and Discord accounts."""

from circle.linking.flow import LinkingError, LinkingFlow, LinkOutcome, LinkStep
from circle.linking.oauth import DiscordOAuthClient, OAuthError
from circle.linking.state import InvalidStateError, StateSigner
from circle.linking.store import IdentityLink, IdentityLinkStore, LinkCode

__all__ = [
    "DiscordOAuthClient",
    "IdentityLink",
    "IdentityLinkStore",
    "InvalidStateError",
    "LinkCode",
    "LinkOutcome",
    "LinkStep",
    "LinkingError",
    "LinkingFlow",
    "OAuthError",
    "StateSigner",
]
