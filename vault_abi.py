from web3 import Web3

# ZapVault: only the surface the keeper touches
VAULT_ABI = [{
    "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
    "name": "needsRebalance",
    "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
    "name": "rebalance",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
    "name": "getPosition",
    "outputs": [{
        "components": [
            {"internalType": "int24", "name": "tickLower", "type": "int24"},
            {"internalType": "int24", "name": "tickUpper", "type": "int24"},
            {"internalType": "int256", "name": "liquidity", "type": "int256"},
            {"internalType": "uint256", "name": "depositedUSDC", "type": "uint256"},
            {"internalType": "uint256", "name": "depositTimestamp", "type": "uint256"},
            {"internalType": "bytes32", "name": "salt", "type": "bytes32"}
        ],
        "internalType": "struct ZapVault.Position",
        "name": "",
        "type": "tuple"
    }],
    "stateMutability": "view",
    "type": "function"
}, {
    "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
    "name": "getConfig",
    "outputs": [{
        "components": [
            {"internalType": "int24", "name": "rangeWidth", "type": "int24"},
            {"internalType": "uint16", "name": "rebalanceThreshold", "type": "uint16"},
            {"internalType": "uint16", "name": "slippage", "type": "uint16"}
        ],
        "internalType": "struct ZapVault.StrategyConfig",
        "name": "",
        "type": "tuple"
    }],
    "stateMutability": "view",
    "type": "function"
}, {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
        {"indexed": False, "internalType": "uint256", "name": "usdcAmount", "type": "uint256"},
        {"indexed": False, "internalType": "int24", "name": "tickLower", "type": "int24"},
        {"indexed": False, "internalType": "int24", "name": "tickUpper", "type": "int24"},
        {"indexed": False, "internalType": "int256", "name": "liquidity", "type": "int256"}
    ],
    "name": "Deposited",
    "type": "event"
}, {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "internalType": "address", "name": "user", "type": "address"},
        {"indexed": False, "internalType": "int24", "name": "newTickLower", "type": "int24"},
        {"indexed": False, "internalType": "int24", "name": "newTickUpper", "type": "int24"}
    ],
    "name": "Rebalanced",
    "type": "event"
}]

# Deposited(user indexed, usdcAmount, tickLower, tickUpper, liquidity)
DEPOSITED_TOPIC = Web3.to_hex(Web3.keccak(text="Deposited(address,uint256,int24,int24,int256)"))
# Non-indexed Deposited fields, in log data order
DEPOSITED_DATA_TYPES = ['uint256', 'int24', 'int24', 'int256']
