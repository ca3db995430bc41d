"""
Accounts: per-user settings, profile and API keys.
"""
