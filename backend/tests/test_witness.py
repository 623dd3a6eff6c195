# backend/tests/test_witness.py
"""
Tests for EIP-712 witness construction, signing and recovery.
"""

import re

from eth_account import Account

from chainpilot.facilitator.types import BatchOperation, Witness
from chainpilot.facilitator.witness import (
    batch_domain,
    build_batch_typed_data,
    build_payment_typed_data,
    domain_separator,
    encode_typed_message,
    generate_payment_id,
    generate_request_id,
    operations_hash,
    payment_domain,
    recover_typed_signer,
    sign_typed_message,
)
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS

USDT = "0x337610d27c682E347C9cD60BD4b3b107C9d34dDd"
USER_KEY = "0x" + "11" * 32
ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"


def _witness(owner, network):
    return Witness(
        owner=owner,
        token=USDT,
        amount=5 * 10**18,
        to=network.facilitator_wallet,
        deadline=2_000_000_000,
        payment_id=generate_payment_id(),
        nonce=3,
    )


def test_sign_and_recover_round_trip(network, user):
    """The recovered signer is the key that signed."""
    typed_data = build_payment_typed_data(_witness(user.address, network), network.chain_id, network.verifying_contract)

    signature = sign_typed_message(typed_data, USER_KEY)

    assert recover_typed_signer(typed_data, signature) == user.address


def test_tampered_message_recovers_someone_else(network, user):
    """Changing the amount after signing breaks recovery."""
    typed_data = build_payment_typed_data(_witness(user.address, network), network.chain_id, network.verifying_contract)
    signature = sign_typed_message(typed_data, USER_KEY)

    typed_data["message"]["amount"] = str(10**24)

    assert recover_typed_signer(typed_data, signature) != user.address


def test_payment_typed_data_shape(network, user):
    typed_data = build_payment_typed_data(_witness(user.address, network), 97, network.verifying_contract)

    assert typed_data["primaryType"] == "Witness"
    assert typed_data["domain"]["name"] == "q402"
    assert typed_data["domain"]["chainId"] == 97
    assert "EIP712Domain" in typed_data["types"]
    assert typed_data["message"]["amount"] == str(5 * 10**18)


def test_operations_hash_depends_on_order():
    """Reordering operations changes the hash the user signs."""
    transfer = BatchOperation("transfer", USDT, 10, NATIVE_TOKEN_ADDRESS, 0, "0x" + "12" * 20)
    swap = BatchOperation("swap", USDT, 10, NATIVE_TOKEN_ADDRESS, 1, ROUTER, "0xabcdef")

    forward = operations_hash([transfer, swap])

    assert forward == operations_hash([transfer, swap])
    assert forward != operations_hash([swap, transfer])
    assert re.fullmatch(r"0x[0-9a-f]{64}", forward)


def test_batch_typed_data_uses_batch_domain(network):
    from chainpilot.facilitator.types import BatchWitness

    witness = BatchWitness(Account.create().address, "0x" + "00" * 32, 2_000_000_000, generate_payment_id(), 0)

    typed_data = build_batch_typed_data(witness, network.chain_id, network.batch_executor)

    assert typed_data["domain"]["name"] == "q402-batch"
    assert typed_data["primaryType"] == "BatchWitness"


def test_domain_separator_matches_typed_data_hashing(network, user):
    """The separator compared against the contracts is the one signatures are built over."""
    typed_data = build_payment_typed_data(_witness(user.address, network), network.chain_id, network.verifying_contract)

    signable = encode_typed_message(typed_data)

    expected = domain_separator(payment_domain(network.chain_id, network.verifying_contract))
    assert "0x" + signable.header.hex() == expected
    assert expected != domain_separator(batch_domain(network.chain_id, network.verifying_contract))


def test_request_and_payment_id_formats():
    assert re.fullmatch(r"q402_[0-9a-z]+_[0-9a-z]{11}", generate_request_id())
    assert re.fullmatch(r"0x[0-9a-f]{64}", generate_payment_id())
    assert generate_request_id() != generate_request_id()
