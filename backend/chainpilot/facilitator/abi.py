# backend/chainpilot/facilitator/abi.py
"""
Contract ABIs consumed by the facilitator.

Only the functions the backend actually calls are listed.
"""


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
    }


_OPERATION_COMPONENTS = [
    {"name": "opType", "type": "uint8"},
    {"name": "tokenIn", "type": "address"},
    {"name": "amountIn", "type": "uint256"},
    {"name": "tokenOut", "type": "address"},
    {"name": "minAmountOut", "type": "uint256"},
    {"name": "target", "type": "address"},
    {"name": "data", "type": "bytes"},
]

_BATCH_WITNESS_COMPONENTS = [
    {"name": "owner", "type": "address"},
    {"name": "operationsHash", "type": "bytes32"},
    {"name": "deadline", "type": "uint256"},
    {"name": "batchId", "type": "bytes32"},
    {"name": "nonce", "type": "uint256"},
]


Q402_IMPLEMENTATION_ABI = [
    _fn(
        "executeTransfer",
        [
            ("owner", "address"),
            ("facilitator", "address"),
            ("token", "address"),
            ("recipient", "address"),
            ("amount", "uint256"),
            ("nonce", "uint256"),
            ("deadline", "uint256"),
            ("signature", "bytes"),
        ],
        mutability="nonpayable",
    ),
    _fn("getNonce", [("owner", "address")], ["uint256"]),
    _fn("usedNonces", [("owner", "address"), ("nonce", "uint256")], ["bool"]),
    _fn("domainSeparator", [], ["bytes32"]),
]


Q402_BATCH_EXECUTOR_ABI = [
    {
        "type": "function",
        "name": "executeBatch",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "witness", "type": "tuple", "components": _BATCH_WITNESS_COMPONENTS},
            {"name": "operations", "type": "tuple[]", "components": _OPERATION_COMPONENTS},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    _fn("getNonce", [("owner", "address")], ["uint256"]),
    _fn("isRouterWhitelisted", [("router", "address")], ["bool"]),
    _fn("isTargetWhitelisted", [("target", "address")], ["bool"]),
    _fn("domainSeparator", [], ["bytes32"]),
    _fn("paused", [], ["bool"]),
]


ERC20_ABI = [
    _fn("balanceOf", [("owner", "address")], ["uint256"]),
]
