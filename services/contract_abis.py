"""
Contract ABIs used by the chain gateway

Only the entries the core calls or decodes are listed.
"""


def _fn(name, inputs=(), outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


ESCROW_FACTORY_ABI = [
    _fn(
        "createEscrow",
        inputs=[("buyer", "address"), ("seller", "address"), ("arbitrator", "address"), ("amount", "uint256")],
        outputs=[("", "address")],
        mutability="nonpayable",
    ),
    _event(
        "NewEscrowCreated",
        [
            ("escrowContractAddress", "address", False),
            ("buyer", "address", False),
            ("seller", "address", False),
            ("amount", "uint256", False),
        ],
    ),
]

ESCROW_ABI = [
    _fn("buyer", outputs=[("", "address")]),
    _fn("seller", outputs=[("", "address")]),
    _fn("arbitrator", outputs=[("", "address")]),
    _fn("amount", outputs=[("", "uint256")]),
    _fn("currentState", outputs=[("", "uint8")]),
    _fn("buyerConfirmedDelivery", outputs=[("", "bool")]),
    _fn("getBalance", outputs=[("", "uint256")]),
    _fn("creationTimestamp", outputs=[("", "uint256")]),
    _fn("confirmDelivery", mutability="nonpayable"),
    _fn("releaseFunds", mutability="nonpayable"),
    _fn("raiseDispute", mutability="nonpayable"),
    _fn("resolveDispute", inputs=[("winner", "address")], mutability="nonpayable"),
    _fn("claimFundsAfterTimeout", mutability="nonpayable"),
]

TOKEN_ABI = [
    _fn("balanceOf", inputs=[("account", "address")], outputs=[("", "uint256")]),
    _fn("decimals", outputs=[("", "uint8")]),
    _fn("burn", inputs=[("amount", "uint256")], mutability="nonpayable"),
    _fn("MINTER_ROLE", outputs=[("", "bytes32")]),
    _event("Burn", [("from", "address", True), ("amount", "uint256", False)]),
    _event(
        "Transfer",
        [("from", "address", True), ("to", "address", True), ("value", "uint256", False)],
    ),
]
