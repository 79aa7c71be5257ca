"""Tests for the 2Hash-DH OPRF primitives."""

from __future__ import annotations

import random

import pytest

from toprf.core.oprf import (
    DOMAIN_SEPARATOR,
    BlindingFactor,
    blind_query,
    encode_query,
    evaluate,
    finalize_query,
    query_from_bytes,
    unblind,
)
from toprf.utils.crypto import BN254_PRIME, SUBGROUP_ORDER, random_scalar


class TestBlinding:
    def test_unblinded_evaluation_matches_direct(self, rng: random.Random) -> None:
        key = random_scalar(rng)
        query = query_from_bytes(b"hello")
        with BlindingFactor.random(rng) as bf:
            blinded = blind_query(query, bf)
            output = finalize_query(query, unblind(blinded * key, bf))
        assert output == evaluate(key, query)

    def test_blinding_hides_query(self, rng: random.Random) -> None:
        query = query_from_bytes(b"hello")
        with BlindingFactor.random(rng) as b1, BlindingFactor.random(rng) as b2:
            assert blind_query(query, b1) != blind_query(query, b2)
            assert blind_query(query, b1) != encode_query(query)

    def test_distinct_queries_distinct_outputs(self, rng: random.Random) -> None:
        key = random_scalar(rng)
        assert evaluate(key, query_from_bytes(b"a")) != evaluate(key, query_from_bytes(b"b"))

    def test_distinct_keys_distinct_outputs(self, rng: random.Random) -> None:
        query = query_from_bytes(b"a")
        assert evaluate(random_scalar(rng), query) != evaluate(random_scalar(rng), query)

    def test_domain_separator_changes_output(self, rng: random.Random) -> None:
        key = random_scalar(rng)
        query = query_from_bytes(b"a")
        assert evaluate(key, query) != evaluate(key, query, DOMAIN_SEPARATOR + 1)


class TestBlindingFactor:
    def test_wiped_on_exit(self, rng: random.Random) -> None:
        with BlindingFactor.random(rng) as bf:
            assert not bf.wiped
        assert bf.wiped
        with pytest.raises(RuntimeError, match="wiped"):
            _ = bf.beta

    def test_wiped_on_error(self, rng: random.Random) -> None:
        with pytest.raises(KeyError):
            with BlindingFactor.random(rng) as bf:
                raise KeyError("boom")
        assert bf.wiped

    def test_zero_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-zero"):
            BlindingFactor(0)

    def test_repr_redacted(self) -> None:
        assert repr(BlindingFactor(12345)) == "BlindingFactor(<redacted>)"

    def test_inverse(self) -> None:
        bf = BlindingFactor(12345)
        assert bf.beta * bf.inverse() % SUBGROUP_ORDER == 1


class TestQueries:
    def test_query_out_of_field_rejected(self) -> None:
        with pytest.raises(ValueError, match="base field"):
            encode_query(BN254_PRIME)

    def test_query_from_bytes_in_field(self) -> None:
        assert 0 <= query_from_bytes(b"x" * 1000) < BN254_PRIME

    def test_domain_separator_is_fixed(self) -> None:
        assert DOMAIN_SEPARATOR == int.from_bytes(b"OPRF", "big")
