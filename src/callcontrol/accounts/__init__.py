"""Accounts, balances and notifications."""
