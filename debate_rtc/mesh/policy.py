"""Role policy: which side of a peer pair originates the offer."""

from debate_rtc.config import POLICY_ASYMMETRIC, POLICY_SYMMETRIC, VALID_POLICIES
from debate_rtc.protocol import ROLE_INITIATOR

ORIGINATOR_LOCAL = "local"
ORIGINATOR_REMOTE = "remote"
ORIGINATOR_NONE = "none"


class RolePolicy:
    """Decides who may send offers.

    Under the asymmetric policy only initiators may offer. Under the
    symmetric policy every participant may. When both sides of a pair may
    offer, the participant with the smaller id originates, so each pair
    negotiates exactly once.

    This narrows "everyone offers" under the symmetric policy: every pair
    is still connected, but the participant with the largest id in a room
    never sends an offer itself. It answers the offers of everyone else.
    """

    def __init__(self, name: str = POLICY_ASYMMETRIC):
        if name not in VALID_POLICIES:
            raise ValueError(f"Unknown role policy: {name!r}")
        self.name = name

    @property
    def symmetric(self) -> bool:
        return self.name == POLICY_SYMMETRIC

    def may_offer(self, role: str) -> bool:
        return self.symmetric or role == ROLE_INITIATOR

    def originator(self, local_id: str, local_role: str, peer_id: str, peer_role: str) -> str:
        """Return ORIGINATOR_LOCAL, ORIGINATOR_REMOTE or ORIGINATOR_NONE for a pair."""
        local_may = self.may_offer(local_role)
        remote_may = self.may_offer(peer_role)
        if local_may and remote_may:
            return ORIGINATOR_LOCAL if local_id < peer_id else ORIGINATOR_REMOTE
        if local_may:
            return ORIGINATOR_LOCAL
        if remote_may:
            return ORIGINATOR_REMOTE
        return ORIGINATOR_NONE

    def __repr__(self):
        return f"RolePolicy({self.name!r})"
