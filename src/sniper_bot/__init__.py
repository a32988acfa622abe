"""
PancakeSwap Sniper Bot.

Watches the PancakeSwap v2 factory for new pairs, acquires tokens through the
deployed sniper contract, and manages exits for every held position.
The framework handles the event feed (with reconnection), pricing from pair
reserves, the layered exit policy, and settlement of sell actions.
"""

__version__ = "0.1.0"
