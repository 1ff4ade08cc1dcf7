"""Tests for RolePolicy."""

import pytest

from debate_rtc.mesh.policy import (
    ORIGINATOR_LOCAL,
    ORIGINATOR_NONE,
    ORIGINATOR_REMOTE,
    RolePolicy,
)
from debate_rtc.protocol import ROLE_INITIATOR, ROLE_RECEIVER


class TestAsymmetricPolicy:
    def setup_method(self):
        self.policy = RolePolicy("asymmetric")

    def test_only_initiators_may_offer(self):
        assert self.policy.may_offer(ROLE_INITIATOR)
        assert not self.policy.may_offer(ROLE_RECEIVER)

    def test_initiator_offers_to_receiver(self):
        assert self.policy.originator("zed", ROLE_INITIATOR, "amy", ROLE_RECEIVER) == ORIGINATOR_LOCAL
        assert self.policy.originator("amy", ROLE_RECEIVER, "zed", ROLE_INITIATOR) == ORIGINATOR_REMOTE

    def test_receivers_never_connect(self):
        assert self.policy.originator("a", ROLE_RECEIVER, "b", ROLE_RECEIVER) == ORIGINATOR_NONE

    def test_two_initiators_smaller_id_offers(self):
        assert self.policy.originator("a", ROLE_INITIATOR, "b", ROLE_INITIATOR) == ORIGINATOR_LOCAL
        assert self.policy.originator("b", ROLE_INITIATOR, "a", ROLE_INITIATOR) == ORIGINATOR_REMOTE


class TestSymmetricPolicy:
    def test_smaller_id_offers_regardless_of_role(self):
        policy = RolePolicy("symmetric")
        assert policy.symmetric
        assert policy.originator("a", ROLE_RECEIVER, "b", ROLE_RECEIVER) == ORIGINATOR_LOCAL
        assert policy.originator("b", ROLE_INITIATOR, "a", ROLE_RECEIVER) == ORIGINATOR_REMOTE

    def test_every_pair_has_one_originator(self):
        policy = RolePolicy("symmetric")
        ids = ["carol", "alice", "dan", "bob"]
        offering = set()
        for local in ids:
            for peer in ids:
                if local == peer:
                    continue
                mine = policy.originator(local, ROLE_RECEIVER, peer, ROLE_RECEIVER)
                theirs = policy.originator(peer, ROLE_RECEIVER, local, ROLE_RECEIVER)
                assert {mine, theirs} == {ORIGINATOR_LOCAL, ORIGINATOR_REMOTE}
                if mine == ORIGINATOR_LOCAL:
                    offering.add(local)
        # The largest id only answers
        assert offering == {"alice", "bob", "carol"}


def test_unknown_policy_rejected():
    with pytest.raises(ValueError, match="Unknown role policy"):
        RolePolicy("chaotic")
