"""Token-economy ledger API: treasury, rewards, mining, cashouts, faucet and ads."""

__version__ = "0.1.0"
