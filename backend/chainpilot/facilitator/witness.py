# backend/chainpilot/facilitator/witness.py
"""
EIP-712 typed data for Q402 witnesses.

- Payment domain: {name: "q402", version: "1", chainId, verifyingContract}
- Batch domain:   {name: "q402-batch", version: "1", chainId, batchExecutor}
- operationsHash is computed exactly like the batch executor contract does:
  keccak256 over the concatenated per-operation struct hashes.

Typed data handed to clients includes the EIP712Domain type so it can be fed
straight into eth_signTypedData_v4. It is stripped again before hashing.
"""

import secrets
import time
from typing import Any, Dict, Iterable, Mapping

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from chainpilot.facilitator.types import BatchOperation, BatchWitness, Witness

PAYMENT_DOMAIN_NAME = "q402"
BATCH_DOMAIN_NAME = "q402-batch"
DOMAIN_VERSION = "1"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

WITNESS_TYPE = [
    {"name": "owner", "type": "address"},
    {"name": "token", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "to", "type": "address"},
    {"name": "deadline", "type": "uint256"},
    {"name": "paymentId", "type": "bytes32"},
    {"name": "nonce", "type": "uint256"},
]

BATCH_WITNESS_TYPE = [
    {"name": "owner", "type": "address"},
    {"name": "operationsHash", "type": "bytes32"},
    {"name": "deadline", "type": "uint256"},
    {"name": "batchId", "type": "bytes32"},
    {"name": "nonce", "type": "uint256"},
]

OPERATION_TYPEHASH = keccak(
    text="Operation(uint8 opType,address tokenIn,uint256 amountIn,address tokenOut,"
    "uint256 minAmountOut,address target,bytes data)"
)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_request_id() -> str:
    """q402_<base36 ms timestamp>_<random>"""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"q402_{_base36(int(time.time() * 1000))}_{random_part}"


def generate_payment_id() -> str:
    """bytes32 id: keccak256 of a ms timestamp and 16 random bytes."""
    return "0x" + keccak(text=f"{int(time.time() * 1000)}:0x{secrets.token_hex(16)}").hex()


# Batch ids are built the same way
generate_batch_id = generate_payment_id


def payment_domain(chain_id: int, verifying_contract: str) -> Dict[str, Any]:
    return {
        "name": PAYMENT_DOMAIN_NAME,
        "version": DOMAIN_VERSION,
        "chainId": chain_id,
        "verifyingContract": to_checksum_address(verifying_contract),
    }


def batch_domain(chain_id: int, batch_executor: str) -> Dict[str, Any]:
    return {
        "name": BATCH_DOMAIN_NAME,
        "version": DOMAIN_VERSION,
        "chainId": chain_id,
        "verifyingContract": to_checksum_address(batch_executor),
    }


EIP712_DOMAIN_TYPEHASH = keccak(text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)")


def domain_separator(domain: Mapping[str, Any]) -> str:
    """Separator for a domain built above, in the form the contracts' domainSeparator() returns it."""
    encoded = abi_encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            EIP712_DOMAIN_TYPEHASH,
            keccak(text=domain["name"]),
            keccak(text=domain["version"]),
            domain["chainId"],
            domain["verifyingContract"],
        ],
    )
    return "0x" + keccak(encoded).hex()


def build_payment_typed_data(witness: Witness, chain_id: int, verifying_contract: str) -> Dict[str, Any]:
    return {
        "domain": payment_domain(chain_id, verifying_contract),
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, "Witness": WITNESS_TYPE},
        "primaryType": "Witness",
        "message": witness.to_message(),
    }


def build_batch_typed_data(witness: BatchWitness, chain_id: int, batch_executor: str) -> Dict[str, Any]:
    return {
        "domain": batch_domain(chain_id, batch_executor),
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, "BatchWitness": BATCH_WITNESS_TYPE},
        "primaryType": "BatchWitness",
        "message": witness.to_message(),
    }


def operation_hash(operation: BatchOperation) -> bytes:
    return keccak(abi_encode(
        ["bytes32", "uint8", "address", "uint256", "address", "uint256", "address", "bytes32"],
        [
            OPERATION_TYPEHASH,
            operation.op_code,
            to_checksum_address(operation.token_in),
            operation.amount_in,
            to_checksum_address(operation.token_out),
            operation.min_amount_out,
            to_checksum_address(operation.target),
            keccak(HexBytes(operation.data or "0x")),
        ],
    ))


def operations_hash(operations: Iterable[BatchOperation]) -> str:
    """0x-prefixed keccak256 of the concatenated operation hashes."""
    return "0x" + keccak(b"".join(operation_hash(op) for op in operations)).hex()


def _typed_message_values(types: Iterable[Mapping[str, str]], message: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce JSON message values into what the EIP-712 encoder expects."""
    values: Dict[str, Any] = {}
    for entry in types:
        name, type_ = entry["name"], entry["type"]
        value = message[name]
        if type_.startswith("uint") or type_.startswith("int"):
            value = int(value, 16) if isinstance(value, str) and value.startswith("0x") else int(value)
        elif type_.startswith("bytes"):
            value = HexBytes(value)
        elif type_ == "address":
            value = to_checksum_address(value)
        values[name] = value
    return values


def encode_typed_message(typed_data: Mapping[str, Any]) -> SignableMessage:
    primary = typed_data["primaryType"]
    fields = typed_data["types"][primary]
    return encode_typed_data(
        domain_data=dict(typed_data["domain"]),
        message_types={primary: fields},
        message_data=_typed_message_values(fields, typed_data["message"]),
    )


def sign_typed_message(typed_data: Mapping[str, Any], private_key: str) -> str:
    """Sign typed data with a local key. Returns a 0x-prefixed signature."""
    signed = Account.sign_message(encode_typed_message(typed_data), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def recover_typed_signer(typed_data: Mapping[str, Any], signature: str) -> str:
    """Checksummed address that produced `signature` over `typed_data`."""
    recovered = Account.recover_message(encode_typed_message(typed_data), signature=HexBytes(signature))
    return to_checksum_address(recovered)
