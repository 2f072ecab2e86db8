"""On-chain interface of the settlement coordinator as seen by the gateway."""

from __future__ import annotations

from web3 import Web3

DECRYPTION_REQUESTED = "DecryptionRequested(uint256,uint256,uint256)"
WITHDRAWAL_REQUESTED = "WithdrawalRequested(uint256,address,uint256)"
DECRYPTION_FAILED = "DecryptionFailed(uint256,string)"
GATEWAY_CALLBACK_PROCESSED = "GatewayCallbackProcessed(uint256,bool)"


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


TOPICS: dict[str, str] = {
    signature.split("(", 1)[0]: event_topic(signature)
    for signature in (
        DECRYPTION_REQUESTED,
        WITHDRAWAL_REQUESTED,
        DECRYPTION_FAILED,
        GATEWAY_CALLBACK_PROCESSED,
    )
}


def _callback(name: str) -> dict[str, object]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "requestId", "type": "uint256"},
            {"name": "plaintext", "type": "uint64"},
            {"name": "signatures", "type": "bytes[]"},
        ],
        "outputs": [],
    }


COORDINATOR_ABI: list[dict[str, object]] = [
    _callback("processSettlementCallback"),
    _callback("processWithdrawalCallback"),
    {
        "type": "function",
        "name": "processTimeout",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "requestId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "DecryptionRequested",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "contractId", "type": "uint256", "indexed": True},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "WithdrawalRequested",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "trader", "type": "address", "indexed": True},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "DecryptionFailed",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "reason", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "GatewayCallbackProcessed",
        "anonymous": False,
        "inputs": [
            {"name": "requestId", "type": "uint256", "indexed": True},
            {"name": "success", "type": "bool", "indexed": False},
        ],
    },
]
