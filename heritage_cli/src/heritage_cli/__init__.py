"""
heritage-cli - Command-line Bitcoin wallet with built-in inheritance

Orchestrates key-providers, online-wallets and heritage-providers for the
wallet, heir-wallet and heir commands.
"""

__version__ = "0.1.0"
