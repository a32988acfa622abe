"""
Integration tests for the BSC Sniper Bot.

These tests wire real components together (feed state machine, acquisition,
store, oracle, policy, executor) over in-memory pools and a scripted feed.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
