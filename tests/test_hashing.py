"""Tests for field hashing and per-identity derivations."""

import pytest

from epochrep.crypto.derivation import (
    Identity,
    gen_attestation_nullifier,
    gen_epoch_key,
    gen_epoch_key_nullifier,
)
from epochrep.crypto.hashing import (
    SMT_ONE_LEAF,
    SMT_ZERO_LEAF,
    SNARK_FIELD_SIZE,
    hash5,
    hash_left_right,
)


# Published circomlib Poseidon outputs.
POSEIDON_T3_1_2 = 7853200120776062878684798364095072458815029376092732009249414926327459813530
POSEIDON_T6_1_2 = 1018317224307729531995786483840663576608797660851238720571059489595066344487


class TestHashLeftRight:
    def test_matches_circomlib_vector(self) -> None:
        assert hash_left_right(1, 2) == POSEIDON_T3_1_2

    def test_deterministic(self) -> None:
        assert hash_left_right(3, 4) == hash_left_right(3, 4)

    def test_order_matters(self) -> None:
        assert hash_left_right(3, 4) != hash_left_right(4, 3)

    def test_output_is_field_element(self) -> None:
        value = hash_left_right(SNARK_FIELD_SIZE - 1, SNARK_FIELD_SIZE - 1)
        assert 0 <= value < SNARK_FIELD_SIZE

    def test_rejects_values_outside_field(self) -> None:
        with pytest.raises(ValueError):
            hash_left_right(SNARK_FIELD_SIZE, 0)
        with pytest.raises(ValueError):
            hash_left_right(-1, 0)

    def test_fixed_leaves_differ(self) -> None:
        assert SMT_ZERO_LEAF == hash_left_right(0, 0)
        assert SMT_ONE_LEAF == hash_left_right(1, 0)
        assert SMT_ZERO_LEAF != SMT_ONE_LEAF


class TestHash5:
    def test_matches_circomlib_vector(self) -> None:
        assert hash5([1, 2, 0, 0, 0]) == POSEIDON_T6_1_2

    def test_missing_inputs_are_zero(self) -> None:
        assert hash5([1, 2]) == hash5([1, 2, 0, 0, 0])

    def test_too_many_inputs(self) -> None:
        with pytest.raises(ValueError, match="at most 5"):
            hash5([1, 2, 3, 4, 5, 6])

    def test_not_a_two_to_one_hash(self) -> None:
        assert hash5([1, 2]) != hash_left_right(1, 2)


class TestDerivation:
    def test_epoch_key_within_tree(self) -> None:
        for nonce in range(4):
            key = gen_epoch_key(1111, 3, nonce, 8)
            assert 0 <= key < 2 ** 8

    def test_epoch_key_varies_with_epoch_and_nonce(self) -> None:
        keys = {gen_epoch_key(1111, epoch, nonce, 32) for epoch in range(3) for nonce in range(2)}
        assert len(keys) == 6

    def test_epoch_key_matches_reduced_hash(self) -> None:
        assert gen_epoch_key(1111, 2, 1, 16) == hash5([1111, 2, 1]) % 2 ** 16

    def test_nullifier_domains_disjoint(self) -> None:
        # Same numeric context must not collide across nullifier kinds.
        assert gen_attestation_nullifier(1111, 0, 0, 128) != gen_epoch_key_nullifier(1111, 0, 0, 128)

    def test_nullifiers_reduced_to_depth(self) -> None:
        assert gen_attestation_nullifier(1111, 7, 0, 10) < 2 ** 10
        assert gen_epoch_key_nullifier(1111, 0, 1, 10) < 2 ** 10

    def test_identity_round_trip(self) -> None:
        identity = Identity(identity_nullifier=1, identity_trapdoor=2, commitment=3)
        assert Identity.from_dict(identity.to_dict()) == identity

    def test_identity_accepts_hex(self) -> None:
        identity = Identity.from_dict({
            "identity_nullifier": "0x10",
            "identity_trapdoor": "2",
            "commitment": 3,
        })
        assert identity.identity_nullifier == 16
        assert identity.commitment == 3
